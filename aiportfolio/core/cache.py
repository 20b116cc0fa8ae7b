import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass(frozen=True)
class CacheEntry:
    timestamp: float
    value: Any
    ttl_override: Optional[float] = None


class TTLCache:
    """
    内存 TTL 缓存

    - 每个条目记录写入时间，可单独覆盖 TTL（如失败结果使用更短的 TTL）
    - 读取时发现过期即删除，没有后台清理
    - 单事件循环内使用，无需加锁
    - 设置 max_entries 时超出容量先清理过期条目，再淘汰最早写入的条目
    """

    def __init__(
        self,
        default_ttl: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: Optional[int] = None,
    ):
        self.default_ttl = default_ttl
        self._clock = clock
        self.max_entries = max_entries
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str, default_ttl: Optional[float] = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None

        ttl = entry.ttl_override
        if ttl is None:
            ttl = default_ttl if default_ttl is not None else self.default_ttl
        if self._clock() - entry.timestamp > ttl:
            # 缓存过期, 删除
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_override: Optional[float] = None) -> None:
        self._entries[key] = CacheEntry(timestamp=self._clock(), value=value, ttl_override=ttl_override)
        if self.max_entries is not None and len(self._entries) > self.max_entries:
            self._evict()

    def _evict(self) -> None:
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.timestamp > (entry.ttl_override if entry.ttl_override is not None else self.default_ttl)
        ]
        for key in expired:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            oldest_key = min(self._entries.items(), key=lambda x: x[1].timestamp)[0]
            del self._entries[oldest_key]

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
