from pathlib import Path
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# 从当前文件目录向上查找最近的 .env
def find_env_file() -> Path | None:
    current = Path(__file__).resolve()
    for parent in current.parents:
        env_file = parent / ".env"
        if env_file.exists():
            return env_file
    return None


ENV_FILE = find_env_file()


class Settings(BaseSettings):
    APP_NAME: str = "AI Portfolio Market Data"
    LOG_LEVEL: str = "INFO"

    # 缓存 TTL（秒）
    # 行情：成功 60s，失败 10s（短失败 TTL，便于瞬时失败尽快重试）
    QUOTE_CACHE_TTL_SECONDS: int = 60
    QUOTE_FAILURE_TTL_SECONDS: int = 10
    # 历史K线：6小时
    HISTORY_CACHE_TTL_SECONDS: int = 6 * 60 * 60
    # symbol -> provider 解析记录：24小时
    RESOLUTION_CACHE_TTL_SECONDS: int = 24 * 60 * 60
    # 基本面快照：24小时
    FUNDAMENTALS_CACHE_TTL_SECONDS: int = 24 * 60 * 60
    # 自定义 API 序列：15秒
    CUSTOM_API_CACHE_TTL_SECONDS: int = 15
    # 缓存容量上限（超出时淘汰最早写入的条目）
    HISTORY_CACHE_MAX_ENTRIES: int = 500
    CACHE_MAX_ENTRIES: int = 2000

    # 限流冷却（收到 429 后跳过该数据源的时长）
    API_RATE_LIMIT_COOLDOWN_SECONDS: int = 15 * 60

    # 外部API并发控制
    EXTERNAL_API_CONCURRENCY: int = 4
    FUNDAMENTALS_CONCURRENCY: int = 3

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = 12.0
    HTTP_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )

    # 上游数据源地址
    YAHOO_CHART_URL: str = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
    YAHOO_FUNDAMENTALS_URL: str = (
        "https://query1.finance.yahoo.com/ws/fundamentals-timeseries/v1/finance/timeseries/{symbol}"
    )
    BOURSORAMA_TICKS_URL: str = "https://www.boursorama.com/bourse/action/graph/ws/GetTicksEOD"
    BOURSORAMA_FUND_URL: str = "https://www.boursorama.com/bourse/opcvm/cours/{fund_id}/"
    STOOQ_CSV_URL: str = "https://stooq.com/q/d/l/"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE) if ENV_FILE else ".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    @field_validator("EXTERNAL_API_CONCURRENCY", "FUNDAMENTALS_CONCURRENCY", mode="before")
    @classmethod
    def _at_least_one(cls, value: int | str | None) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return 1
        return max(1, parsed)


settings = Settings()
