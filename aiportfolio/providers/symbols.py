"""symbol 转换规则

- 交易所后缀拆分
- Boursorama 候选 id 生成（巴黎 -> 2 个候选，德国 -> 1 个，无后缀原样透传）
- Stooq 代码转换（后缀 -> 两位国家码，无后缀默认 .us）
- 基金代码识别
"""

import re
from typing import List, Optional, Tuple

# Boursorama 内部前缀：1rP = Euronext Paris，1rA = Euronext Growth，1z = Xetra
BOURSORAMA_PREFIXES = {
    "PA": ("1rP", "1rA"),
    "DE": ("1z",),
}

STOOQ_COUNTRY = {
    "PA": "fr",
    "DE": "de",
    "F": "de",
    "L": "uk",
    "T": "jp",
    "HK": "hk",
    "US": "us",
}

# Morningstar 基金 id + 基金市场后缀，如 0P0000ZWX4.F
FUND_SYMBOL_RE = re.compile(r"^0P[0-9A-Z]{8}\.F$")


def split_exchange_suffix(symbol: str) -> Tuple[str, Optional[str]]:
    """"SAF.PA" -> ("SAF", "PA")；"AAPL" -> ("AAPL", None)"""
    text = (symbol or "").strip().upper()
    if "." not in text:
        return text, None
    base, _, suffix = text.rpartition(".")
    if not base or not suffix:
        return text, None
    return base, suffix


def boursorama_candidates(symbol: str) -> List[str]:
    base, suffix = split_exchange_suffix(symbol)
    if not base:
        return []
    if suffix is None:
        return [base]
    prefixes = BOURSORAMA_PREFIXES.get(suffix)
    if not prefixes:
        return []
    return [f"{prefix}{base}" for prefix in prefixes]


def stooq_symbol(symbol: str) -> str:
    base, suffix = split_exchange_suffix(symbol)
    if suffix is None:
        return f"{base}.us".lower()
    country = STOOQ_COUNTRY.get(suffix, suffix)
    return f"{base}.{country}".lower()


def is_fund_identifier(symbol: str) -> bool:
    return bool(FUND_SYMBOL_RE.match((symbol or "").strip().upper()))


def fund_page_id(symbol: str) -> str:
    base, _ = split_exchange_suffix(symbol)
    return base
