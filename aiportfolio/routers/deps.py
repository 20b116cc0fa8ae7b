from fastapi import Request

from aiportfolio.services.market_data_service import MarketDataService
from aiportfolio.services.portfolio_service import PortfolioService


def get_market_data_service(request: Request) -> MarketDataService:
    return request.app.state.market_data


def get_portfolio_service(request: Request) -> PortfolioService:
    return PortfolioService(request.app.state.market_data)
