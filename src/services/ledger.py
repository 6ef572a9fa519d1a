"""Append-only, hash-verifiable ledger for audit records.

The ledger is the tamper-evident half of every audit write.  Each
``append`` is a new transaction: the store assigns a transaction id and
the entry hash is SHA-256 over the canonical JSON of the value, a ``:``
separator and that transaction id.  Writing an existing key again adds a
transaction to the key's history; nothing is ever overwritten.

Two backends satisfy :class:`ImmutableLedger`:

- :class:`InMemoryLedger` -- process-local test double with an
  availability switch for simulating outages.
- :class:`RedisLedger` -- ``redis.asyncio`` backed store.  Transaction
  ids come from ``INCR`` and each key's history is a Redis list.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Final, Protocol, runtime_checkable

import orjson
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.audit import LedgerEntry
from src.services.errors import LedgerUnavailableError, NotFoundError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def canonical_json(value: Any) -> bytes:
    """Deterministic serialisation: sorted keys, no whitespace."""
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS)


def compute_hash(value: Any, tx_id: str) -> str:
    digest = hashlib.sha256()
    digest.update(canonical_json(value))
    digest.update(b":")
    digest.update(tx_id.encode())
    return digest.hexdigest()


def _entry_matches(entry: LedgerEntry, expected_hash: str) -> bool:
    if not hmac.compare_digest(entry.hash, expected_hash):
        return False
    # Re-hash the stored value so a tampered value_json is detected.
    recomputed = compute_hash(orjson.loads(entry.value_json), entry.tx_id)
    return hmac.compare_digest(recomputed, expected_hash)


# ---------------------------------------------------------------------------
# Ledger protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ImmutableLedger(Protocol):
    """Async ledger interface.

    Every operation raises :class:`LedgerUnavailableError` when the
    backend cannot be reached.
    """

    async def append(self, key: str, value: Any) -> tuple[str, str]: ...

    async def read(self, key: str) -> LedgerEntry: ...

    async def verify(self, key: str, expected_hash: str) -> bool: ...

    async def history(self, key: str) -> list[LedgerEntry]: ...

    async def ping(self) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryLedger:
    """Dict-of-lists ledger for tests and single-process development.

    ``set_available(False)`` makes every call raise
    :class:`LedgerUnavailableError`; ``fail_next(n)`` fails only the next
    *n* appends, which models a transient outage.
    """

    __slots__ = ("_available", "_clock", "_entries", "_fail_appends", "_lock", "_tx_counter")

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._entries: dict[str, list[LedgerEntry]] = {}
        self._tx_counter = 0
        self._lock = asyncio.Lock()
        self._available = True
        self._fail_appends = 0
        self._clock = clock or (lambda: datetime.now(UTC))

    def set_available(self, available: bool) -> None:
        self._available = available

    def fail_next(self, count: int = 1) -> None:
        self._fail_appends = count

    def _check_available(self) -> None:
        if not self._available:
            raise LedgerUnavailableError("in-memory ledger is offline")

    async def append(self, key: str, value: Any) -> tuple[str, str]:
        self._check_available()
        async with self._lock:
            if self._fail_appends > 0:
                self._fail_appends -= 1
                raise LedgerUnavailableError("simulated transient ledger failure")
            self._tx_counter += 1
            tx_id = f"tx-{self._tx_counter:012d}"
            ledger_hash = compute_hash(value, tx_id)
            entry = LedgerEntry(
                key=key,
                value_json=canonical_json(value).decode(),
                tx_id=tx_id,
                hash=ledger_hash,
                timestamp=self._clock(),
            )
            self._entries.setdefault(key, []).append(entry)
        return tx_id, ledger_hash

    async def read(self, key: str) -> LedgerEntry:
        self._check_available()
        entries = self._entries.get(key)
        if not entries:
            raise NotFoundError(f"ledger key {key} not found")
        return entries[-1]

    async def verify(self, key: str, expected_hash: str) -> bool:
        self._check_available()
        return any(_entry_matches(e, expected_hash) for e in self._entries.get(key, ()))

    async def history(self, key: str) -> list[LedgerEntry]:
        self._check_available()
        return list(self._entries.get(key, ()))

    async def ping(self) -> bool:
        return self._available

    @property
    def transaction_count(self) -> int:
        return self._tx_counter


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

_RETRY_ATTEMPTS: Final[int] = 3


class RedisLedger:
    """Redis-backed ledger using ``redis.asyncio`` with connection pooling.

    Layout under *namespace*:

    - ``{ns}txid`` -- counter incremented once per transaction.
    - ``{ns}entry:{key}`` -- list of JSON-encoded :class:`LedgerEntry`
      objects, oldest first.  Only ``RPUSH`` is ever issued against it.
    """

    __slots__ = ("_namespace", "_pool", "_redis")

    def __init__(
        self,
        url: str = "redis://localhost:6379/1",
        *,
        namespace: str = "ledger:",
        max_connections: int = 20,
    ) -> None:
        import redis.asyncio as aioredis

        self._namespace = namespace
        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    def _entry_key(self, key: str) -> str:
        return f"{self._namespace}entry:{key}"

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError, OSError)),
        stop=stop_after_attempt(_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def _append_once(self, key: str, value: Any) -> LedgerEntry:
        tx_number = await self._redis.incr(f"{self._namespace}txid")
        tx_id = f"tx-{int(tx_number):012d}"
        entry = LedgerEntry(
            key=key,
            value_json=canonical_json(value).decode(),
            tx_id=tx_id,
            hash=compute_hash(value, tx_id),
            timestamp=datetime.now(UTC),
        )
        await self._redis.rpush(self._entry_key(key), entry.model_dump_json())
        return entry

    async def append(self, key: str, value: Any) -> tuple[str, str]:
        try:
            entry = await self._append_once(key, value)
        except (RedisError, OSError) as exc:
            logger.warning("ledger.redis_append_failed", key=key, error=str(exc))
            raise LedgerUnavailableError(str(exc)) from exc
        return entry.tx_id, entry.hash

    async def read(self, key: str) -> LedgerEntry:
        try:
            raw = await self._redis.lindex(self._entry_key(key), -1)
        except (RedisError, OSError) as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        if raw is None:
            raise NotFoundError(f"ledger key {key} not found")
        return LedgerEntry.model_validate_json(raw)

    async def history(self, key: str) -> list[LedgerEntry]:
        try:
            rows = await self._redis.lrange(self._entry_key(key), 0, -1)
        except (RedisError, OSError) as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        return [LedgerEntry.model_validate_json(row) for row in rows]

    async def verify(self, key: str, expected_hash: str) -> bool:
        return any(_entry_matches(e, expected_hash) for e in await self.history(key))

    # -- Lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False


def build_ledger(settings: object) -> ImmutableLedger:
    """Construct the ledger backend named by ``settings.ledger_backend``."""
    backend = getattr(settings, "ledger_backend", "memory")
    if backend == "redis":
        url = getattr(settings, "ledger_redis_url", "redis://localhost:6379/1")
        namespace = getattr(settings, "ledger_namespace", "ledger:")
        logger.info("ledger.backend_selected", backend="redis")
        return RedisLedger(url, namespace=namespace)
    logger.info("ledger.backend_selected", backend="memory")
    return InMemoryLedger()
