import pytest
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse
from fastapi.testclient import TestClient

from aiportfolio import main
from aiportfolio.models.market import build_price_entry
from aiportfolio.routers import market, portfolio
from tests.conftest import make_adapters, make_points


@pytest.fixture
def api(build_service):
    adapters = make_adapters(
        primary={"AAPL": build_price_entry(120.0, 118.0, long_name="Apple Inc.", currency="USD")},
        primary_history={"AAPL": make_points([100.0, 105.0, 110.0, 115.0, 120.0])},
    )
    app = FastAPI(default_response_class=ORJSONResponse)
    app.include_router(market.router, prefix="/api/v1")
    app.include_router(portfolio.router, prefix="/api/v1")
    app.state.market_data = build_service(adapters)
    return TestClient(app)


def test_prices_endpoint(api):
    resp = api.get("/api/v1/market/prices", params={"symbols": "aapl, MISSING,AAPL"})
    assert resp.status_code == 200
    body = resp.json()
    assert set(body) == {"AAPL", "MISSING"}
    assert body["AAPL"]["current"] == 120.0
    assert body["AAPL"]["previous_close"] == 118.0
    assert body["AAPL"]["price_1y"] == 100.0
    assert body["MISSING"]["current"] == 0
    assert body["MISSING"]["previous_close"] is None


def test_prices_requires_symbols(api):
    assert api.get("/api/v1/market/prices", params={"symbols": " , "}).status_code == 422


def test_history_endpoint(api):
    resp = api.get("/api/v1/market/history", params={"symbols": "AAPL", "period": "1y"})
    assert resp.status_code == 200
    assert [p["close"] for p in resp.json()["AAPL"]] == [100.0, 105.0, 110.0, 115.0, 120.0]


def test_history_rejects_unknown_interval(api):
    resp = api.get("/api/v1/market/history", params={"symbols": "AAPL", "interval": "5m"})
    assert resp.status_code == 422


def test_fundamentals_unavailable(api):
    resp = api.get("/api/v1/market/fundamentals/aapl")
    assert resp.status_code == 200
    assert resp.json()["symbol"] == "AAPL"
    assert resp.json()["available"] is False


def test_monitoring_and_cache_clear(api):
    api.get("/api/v1/market/prices", params={"symbols": "AAPL"})
    monitoring = api.get("/api/v1/market/monitoring").json()
    assert monitoring["cache_sizes"]["quotes"] >= 1

    assert api.post("/api/v1/market/cache/clear").json() == {"status": "ok"}
    assert api.get("/api/v1/market/monitoring").json()["cache_sizes"]["quotes"] == 0


POSITIONS = {
    "positions": [
        {"id": "p1", "symbol": "AAPL", "quantity": 10, "cost_price": 100, "tags": ["t1"], "purchase_date": "2020-01-01"},
        {"id": "p2", "symbol": "MISSING", "quantity": 5, "cost_price": 10, "tags": ["t1"]},
        {"id": "p3", "symbol": "AAPL", "quantity": 3, "cost_price": 90, "is_closed": True, "closing_price": 95},
    ],
    "tag_names": {"t1": "Tech"},
}


def test_portfolio_summary(api):
    body = api.post("/api/v1/portfolio/summary", json=POSITIONS).json()
    assert body["total_market_value"] == pytest.approx(1200.0)
    assert body["total_unrealized_pl"] == pytest.approx(200.0)


def test_portfolio_summary_debug_flags_missing_prices(api):
    body = api.post("/api/v1/portfolio/summary/debug", json=POSITIONS).json()
    notes = {row["symbol"]: row["note"] for row in body["rows"]}
    assert notes["AAPL"] == ""
    assert notes["MISSING"] == "missing live price"
    assert body["total_market_value"] == pytest.approx(1200.0)


def test_portfolio_tag_summary(api):
    rows = api.post("/api/v1/portfolio/tags/summary", json=POSITIONS).json()
    assert [row["tag"] for row in rows] == ["Tech"]
    assert rows[0]["total_market_value"] == pytest.approx(1200.0)


def test_portfolio_enriched(api):
    rows = api.post("/api/v1/portfolio/enriched", json=POSITIONS).json()
    assert [row["id"] for row in rows] == ["p1", "p2", "p3"]
    assert rows[0]["current_price"] == 120.0
    assert rows[0]["long_name"] == "Apple Inc."
    assert rows[0]["pe_ratio"] is None
    assert rows[0]["indicator_disabled"] is False


class _ClosingService:
    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_lifespan_closes_market_data_when_app_errors(monkeypatch):
    created = []

    def factory():
        created.append(_ClosingService())
        return created[-1]

    monkeypatch.setattr(main, "MarketDataService", factory)
    app = FastAPI()
    with pytest.raises(RuntimeError):
        async with main.lifespan(app):
            assert app.state.market_data is created[0]
            raise RuntimeError("shutdown failure")
    assert created[0].closed
