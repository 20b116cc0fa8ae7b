import logging
import sys

# 2024-03-21 10:00:00.123 | INFO    | module:function:line - message
LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)-7s | %(name)s:%(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 上游库日志：yfinance 在限流 / 退市时会刷大量 ERROR，由数据源层自己记录
NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "yfinance": logging.CRITICAL,
    "peewee": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
}


def resolve_level(level) -> int:
    """"debug" / "INFO" / 10 -> logging 级别，无法识别时为 INFO"""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level or "").strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level=logging.INFO) -> logging.Logger:
    """
    配置全局日志格式（根 logger 只保留一个 stdout handler）

    uvicorn 的 logger 复用同一格式；重复调用不会叠加 handler。
    """
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(resolve_level(level))

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        if uvicorn_logger.handlers:
            for existing in uvicorn_logger.handlers:
                existing.setFormatter(formatter)
        else:
            uvicorn_logger.addHandler(handler)
            uvicorn_logger.propagate = False

    logging.getLogger(__name__).info(f"Logging initialized at {logging.getLevelName(root_logger.level)}")
    return root_logger
