"""Tests for the append-only ledger (in-memory backend and hashing)."""

from __future__ import annotations

import hashlib

import orjson
import pytest

from src.models.audit import LedgerEntry
from src.services.errors import LedgerUnavailableError, NotFoundError
from src.services.ledger import (
    ImmutableLedger,
    InMemoryLedger,
    RedisLedger,
    build_ledger,
    canonical_json,
    compute_hash,
)


# -----------------------------------------------------------------------
# Hashing
# -----------------------------------------------------------------------


class TestHashing:
    def test_canonical_json_sorts_keys(self) -> None:
        assert canonical_json({"b": 1, "a": 2}) == canonical_json({"a": 2, "b": 1}), (
            "key order must not change the canonical form"
        )

    def test_hash_covers_value_and_tx_id(self) -> None:
        value = {"entity": "Client", "id": "42"}
        expected = hashlib.sha256(
            orjson.dumps(value, option=orjson.OPT_SORT_KEYS) + b":" + b"tx-1"
        ).hexdigest()
        assert compute_hash(value, "tx-1") == expected

    def test_different_tx_id_changes_hash(self) -> None:
        value = {"a": 1}
        assert compute_hash(value, "tx-1") != compute_hash(value, "tx-2")


# -----------------------------------------------------------------------
# InMemoryLedger
# -----------------------------------------------------------------------


class TestInMemoryLedger:
    async def test_append_returns_tx_and_hash(self, ledger: InMemoryLedger) -> None:
        tx_id, ledger_hash = await ledger.append("k1", {"v": 1})
        assert tx_id == "tx-000000000001", "first transaction id should be tx-000000000001"
        assert ledger_hash == compute_hash({"v": 1}, tx_id)

    async def test_read_returns_latest_entry(self, ledger: InMemoryLedger) -> None:
        await ledger.append("k1", {"v": 1})
        await ledger.append("k1", {"v": 2})
        entry = await ledger.read("k1")
        assert isinstance(entry, LedgerEntry)
        assert orjson.loads(entry.value_json) == {"v": 2}, "read should return the newest value"

    async def test_rewrite_appends_to_history(self, ledger: InMemoryLedger) -> None:
        first_tx, _ = await ledger.append("k1", {"v": 1})
        second_tx, _ = await ledger.append("k1", {"v": 1})
        history = await ledger.history("k1")
        assert [e.tx_id for e in history] == [first_tx, second_tx], (
            "writing a key again must add a transaction, never overwrite"
        )

    async def test_read_missing_key_raises(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(NotFoundError):
            await ledger.read("missing")

    async def test_verify_matches_any_historical_hash(self, ledger: InMemoryLedger) -> None:
        _, first_hash = await ledger.append("k1", {"v": 1})
        await ledger.append("k1", {"v": 2})
        assert await ledger.verify("k1", first_hash) is True
        assert await ledger.verify("k1", "0" * 64) is False

    async def test_verify_unknown_key_is_false(self, ledger: InMemoryLedger) -> None:
        assert await ledger.verify("nope", "0" * 64) is False

    async def test_offline_ledger_raises_unavailable(self, ledger: InMemoryLedger) -> None:
        ledger.set_available(False)
        with pytest.raises(LedgerUnavailableError):
            await ledger.append("k1", {"v": 1})
        with pytest.raises(LedgerUnavailableError):
            await ledger.read("k1")
        assert await ledger.ping() is False

    async def test_fail_next_is_transient(self, ledger: InMemoryLedger) -> None:
        ledger.fail_next(1)
        with pytest.raises(LedgerUnavailableError):
            await ledger.append("k1", {"v": 1})
        tx_id, _ = await ledger.append("k1", {"v": 1})
        assert tx_id == "tx-000000000001", "a failed append must not consume a transaction id"
        assert ledger.transaction_count == 1

    def test_satisfies_protocol(self, ledger: InMemoryLedger) -> None:
        assert isinstance(ledger, ImmutableLedger)


# -----------------------------------------------------------------------
# Backend selection
# -----------------------------------------------------------------------


class TestBuildLedger:
    def test_memory_backend_by_default(self, test_settings) -> None:
        assert isinstance(build_ledger(test_settings), InMemoryLedger)

    def test_redis_backend_selected(self, test_settings) -> None:
        redis_settings = test_settings.model_copy(update={"ledger_backend": "redis"})
        ledger = build_ledger(redis_settings)
        assert isinstance(ledger, RedisLedger), "redis backend should build a RedisLedger"
