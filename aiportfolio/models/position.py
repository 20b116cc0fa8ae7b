from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional


def as_boolean(value: Any) -> bool:
    if value is True:
        return True
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 1
    return False


def normalise_number(value: Any, fallback: float = 0.0) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    return num if math.isfinite(num) else fallback


def nullable_number(value: Any) -> Optional[float]:
    """空值 / 无法解析 -> None"""
    if value is None or value == "":
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def parse_date_input(value: Any) -> Optional[datetime]:
    """解析文档中的日期字段（datetime / date / 毫秒时间戳 / ISO 字符串），统一为 UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def iso_date_only(value: Any) -> Optional[str]:
    parsed = parse_date_input(value)
    return parsed.date().isoformat() if parsed else None


@dataclass
class Position:
    """持仓记录（来自外部文档存储，只读）"""
    symbol: str
    quantity: float = 0.0
    cost_price: float = 0.0
    is_closed: bool = False
    closing_price: Optional[float] = None
    closing_date: Optional[datetime] = None
    purchase_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)   # tag id 列表
    id: Optional[str] = None
    api_url: Optional[str] = None
    api_token: Optional[str] = None
    # 文档中已有的基本面指标；fundamentals_overrides[字段]=True 表示手工维护，不自动补全
    revenue_growth_yoy_pct: Optional[float] = None
    pe_ratio: Optional[float] = None
    peg_ratio: Optional[float] = None
    roe_5y_avg_pct: Optional[float] = None
    quick_ratio: Optional[float] = None
    indicator_disabled: bool = False
    fundamentals_overrides: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Position":
        closing_raw = doc.get("closing_price")
        raw_id = doc.get("_id", doc.get("id"))
        tags = doc.get("tags")
        overrides = doc.get("fundamentals_overrides")
        return cls(
            symbol=str(doc.get("symbol") or "").strip().upper(),
            quantity=normalise_number(doc.get("quantity")),
            cost_price=normalise_number(doc.get("cost_price")),
            is_closed=as_boolean(doc.get("is_closed")),
            closing_price=None if closing_raw is None or closing_raw == "" else normalise_number(closing_raw),
            closing_date=parse_date_input(doc.get("closing_date")),
            purchase_date=parse_date_input(doc.get("purchase_date")),
            created_at=parse_date_input(doc.get("created_at")),
            updated_at=parse_date_input(doc.get("updated_at")),
            tags=[str(t) for t in tags] if isinstance(tags, (list, tuple)) else [],
            id=str(raw_id) if raw_id is not None else None,
            api_url=doc.get("api_url") or None,
            api_token=doc.get("api_token") or None,
            revenue_growth_yoy_pct=nullable_number(doc.get("revenue_growth_yoy_pct")),
            pe_ratio=nullable_number(doc.get("pe_ratio")),
            peg_ratio=nullable_number(doc.get("peg_ratio")),
            roe_5y_avg_pct=nullable_number(doc.get("roe_5y_avg_pct")),
            quick_ratio=nullable_number(doc.get("quick_ratio")),
            indicator_disabled=as_boolean(doc.get("indicator_disabled")),
            fundamentals_overrides={str(k): as_boolean(v) for k, v in overrides.items()} if isinstance(overrides, Mapping) else {},
        )

    @property
    def opened_at(self) -> Optional[datetime]:
        return self.purchase_date or self.created_at
