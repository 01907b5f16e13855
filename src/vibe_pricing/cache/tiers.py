"""
Cache tiers - fast volatile, medium persistent and slow durable backends.

Every tier speaks the same small interface; ``TieredCache`` composes any number
of them fastest-first. A tier may raise on failure; the tiered cache contains
the error so it only ever costs that tier.
"""
import pickle
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol, Union

from ..config.logging_config import get_logger
from ..errors import CacheTierError

logger = get_logger("vibe_pricing.cache")


class CacheTier(Protocol):
    """Minimal contract every cache backend implements."""

    name: str

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: int) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def clear_prefix(self, prefix: str) -> bool: ...


class MemoryTier:
    """Per-process dictionary with expiry. Fast and volatile."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: int) -> bool:
        self._data[key] = (value, self._clock() + ttl)
        return True

    def delete(self, key: str) -> bool:
        self._data.pop(key, None)
        return True

    def clear_prefix(self, prefix: str) -> bool:
        for key in [k for k in self._data if k.startswith(prefix)]:
            del self._data[key]
        return True

    def remaining_ttl(self, key: str) -> Optional[float]:
        entry = self._data.get(key)
        if entry is None:
            return None
        return max(0.0, entry[1] - self._clock())

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        return len(expired)

    def stats(self) -> dict:
        return {"entries": len(self._data)}


class RedisTier:
    """Shared Redis cache; values are pickled, expiry handled by Redis."""

    name = "redis"

    def __init__(self, client: Any, scan_count: int = 500):
        self.client = client
        self.scan_count = scan_count

    @classmethod
    def from_url(cls, redis_url: str) -> 'RedisTier':
        import redis

        client = redis.Redis.from_url(
            redis_url,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
        )
        return cls(client)

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(key)
        if raw is None:
            return None
        return pickle.loads(raw)

    def set(self, key: str, value: Any, ttl: int) -> bool:
        return bool(self.client.setex(key, max(1, int(ttl)), pickle.dumps(value)))

    def delete(self, key: str) -> bool:
        self.client.delete(key)
        return True

    def clear_prefix(self, prefix: str) -> bool:
        batch = []
        for key in self.client.scan_iter(match=f"{prefix}*", count=self.scan_count):
            batch.append(key)
            if len(batch) >= self.scan_count:
                self.client.delete(*batch)
                batch = []
        if batch:
            self.client.delete(*batch)
        return True

    def remaining_ttl(self, key: str) -> Optional[float]:
        # PTTL is -2 for a missing key and -1 for a key without expiry
        millis = self.client.pttl(key)
        if millis is None or millis < 0:
            return None
        return millis / 1000.0

    def stats(self) -> dict:
        return {"entries": int(self.client.dbsize())}


class SqliteTier:
    """
    Durable table-backed cache.

    Rows carry their own ``expiry_time`` so reads can ignore stale rows and
    ``purge_expired`` can sweep them later.
    """

    name = "sqlite"
    table = "vibe_pricing_cache"

    def __init__(self, db_path: Union[str, Path], clock: Callable[[], float] = time.time):
        self.db_path = str(db_path)
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None

    def _connect(self) -> sqlite3.Connection:
        # A single connection per tier so ":memory:" databases survive calls
        if self._conn is None:
            try:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.db_path)
                self._ensure_schema(conn)
            except (OSError, sqlite3.Error) as exc:
                raise CacheTierError(f"cannot open cache db: {exc}", {"path": self.db_path}) from exc
            self._conn = conn
        return self._conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        with conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    cache_key TEXT PRIMARY KEY,
                    cache_value BLOB,
                    expiry_time REAL
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{self.table}_expiry ON {self.table} (expiry_time)"
            )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def get(self, key: str) -> Optional[Any]:
        row = self._connect().execute(
            f"SELECT cache_value FROM {self.table} WHERE cache_key = ? AND expiry_time > ?",
            (key, self._clock()),
        ).fetchone()
        if row is None:
            return None
        return pickle.loads(row[0])

    def set(self, key: str, value: Any, ttl: int) -> bool:
        conn = self._connect()
        with conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {self.table} (cache_key, cache_value, expiry_time) "
                "VALUES (?, ?, ?)",
                (key, pickle.dumps(value), self._clock() + ttl),
            )
        return True

    def delete(self, key: str) -> bool:
        conn = self._connect()
        with conn:
            conn.execute(f"DELETE FROM {self.table} WHERE cache_key = ?", (key,))
        return True

    def clear_prefix(self, prefix: str) -> bool:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        conn = self._connect()
        with conn:
            conn.execute(
                f"DELETE FROM {self.table} WHERE cache_key LIKE ? ESCAPE '\\'",
                (escaped + "%",),
            )
        return True

    def remaining_ttl(self, key: str) -> Optional[float]:
        row = self._connect().execute(
            f"SELECT expiry_time FROM {self.table} WHERE cache_key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return max(0.0, row[0] - self._clock())

    def purge_expired(self) -> int:
        """Delete expired rows; returns how many were removed."""
        conn = self._connect()
        with conn:
            cursor = conn.execute(
                f"DELETE FROM {self.table} WHERE expiry_time <= ?", (self._clock(),)
            )
        return cursor.rowcount

    def stats(self) -> dict:
        row = self._connect().execute(
            f"SELECT COUNT(*), COALESCE(SUM(LENGTH(cache_value)), 0) FROM {self.table} "
            "WHERE expiry_time > ?",
            (self._clock(),),
        ).fetchone()
        return {"entries": int(row[0]), "size": int(row[1])}


class TieredCache:
    """
    Read-fallthrough, write-through cache over an ordered list of tiers.

    ``get`` walks the tiers fastest-first and backfills every faster tier on a
    hit, for no longer than the entry has left in the tier that served it. ``set``, ``delete`` and ``clear_prefix`` touch every tier; the result is
    the AND of the tier results. A tier that raises counts as a miss / failure
    for that tier only.
    """

    def __init__(self, tiers: Iterable[CacheTier], backfill_ttl: int = 3600):
        self.tiers = list(tiers)
        self.backfill_ttl = backfill_ttl

    def _call(self, tier: CacheTier, operation: str, *args: Any) -> Any:
        try:
            return getattr(tier, operation)(*args)
        except Exception as exc:
            logger.warning(
                "Cache tier error",
                tier=getattr(tier, "name", type(tier).__name__),
                operation=operation,
                error=str(exc),
            )
            return None

    def get(self, key: str) -> Optional[Any]:
        for position, tier in enumerate(self.tiers):
            value = self._call(tier, "get", key)
            if value is not None:
                if position:
                    self._backfill(self.tiers[:position], key, value, tier)
                return value
        return None

    def _backfill(self, faster: list, key: str, value: Any, source: CacheTier) -> None:
        ttl = self.backfill_ttl
        if hasattr(source, "remaining_ttl"):
            remaining = self._call(source, "remaining_ttl", key)
            if remaining is not None:
                ttl = min(ttl, remaining)
        if ttl <= 0:
            return
        for tier in faster:
            self._call(tier, "set", key, value, ttl)

    def set(self, key: str, value: Any, ttl: int) -> bool:
        success = True
        for tier in self.tiers:
            success = bool(self._call(tier, "set", key, value, ttl)) and success
        return success

    def delete(self, key: str) -> bool:
        success = True
        for tier in self.tiers:
            success = bool(self._call(tier, "delete", key)) and success
        return success

    def clear_prefix(self, prefix: str) -> bool:
        success = True
        for tier in self.tiers:
            success = bool(self._call(tier, "clear_prefix", prefix)) and success
        return success

    def purge_expired(self) -> int:
        """Run the expiry sweep on every tier that supports one."""
        removed = 0
        for tier in self.tiers:
            if hasattr(tier, "purge_expired"):
                removed += self._call(tier, "purge_expired") or 0
        return removed

    def stats(self) -> dict:
        result = {}
        for tier in self.tiers:
            if hasattr(tier, "stats"):
                result[tier.name] = self._call(tier, "stats")
        return result
