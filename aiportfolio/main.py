import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse

from aiportfolio.core.config import settings
from aiportfolio.core.logging_config import setup_logging
from aiportfolio.routers import market, portfolio
from aiportfolio.services.market_data_service import MarketDataService

# 初始化系统日志
setup_logging(settings.LOG_LEVEL)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时创建行情服务（共享 HTTP 连接池、缓存、冷却状态），关闭时释放"""
    app.state.market_data = MarketDataService()
    logger.info("MarketDataService started")

    try:
        yield
    finally:
        await app.state.market_data.aclose()
        logger.info("MarketDataService closed")


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan, default_response_class=ORJSONResponse)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 启用GZip压缩（历史序列响应较大）
app.add_middleware(GZipMiddleware, minimum_size=1024)

app.include_router(market.router, prefix="/api/v1")
app.include_router(portfolio.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok"}
