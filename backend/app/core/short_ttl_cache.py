from __future__ import annotations

from threading import Lock
from time import monotonic
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class ShortTTLCache(Generic[T]):
    """
    进程内短 TTL 缓存（用户资料/角色查询降压）。

    设计目标：
    - 显式注入：由调用方创建并传入服务，不作为模块级全局状态；
    - 过期即失效：读到过期条目时当场删除，不依赖写入方主动失效；
    - 线程安全：多请求并发下不会破坏字典状态；
    - 不跨进程：仅当前 worker 内生效。
    """

    def __init__(
        self,
        *,
        max_entries: int = 512,
        default_ttl_sec: float = 0.0,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._max_entries = max(32, int(max_entries or 512))
        self._default_ttl = float(default_ttl_sec or 0)
        self._clock = clock
        self._store: dict[str, tuple[float, T]] = {}
        self._lock = Lock()

    @property
    def default_ttl_sec(self) -> float:
        return self._default_ttl

    def get(self, key: str) -> T | None:
        now = self._clock()
        with self._lock:
            row = self._store.get(key)
            if row is None:
                return None
            expires_at, value = row
            if expires_at <= now:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: T, *, ttl_sec: float | None = None) -> None:
        ttl = float(self._default_ttl if ttl_sec is None else ttl_sec or 0)
        if ttl <= 0:
            return
        now = self._clock()
        expires_at = now + ttl
        with self._lock:
            if len(self._store) >= self._max_entries:
                # 先清理过期条目；仍超限时按插入顺序淘汰最早项。
                expired_keys = [k for k, (exp, _) in self._store.items() if exp <= now]
                for k in expired_keys:
                    self._store.pop(k, None)
                while len(self._store) >= self._max_entries:
                    try:
                        oldest_key = next(iter(self._store))
                    except StopIteration:
                        break
                    self._store.pop(oldest_key, None)
            self._store[key] = (expires_at, value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        with self._lock:
            for k in [k for k in self._store if k.startswith(prefix)]:
                self._store.pop(k, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
