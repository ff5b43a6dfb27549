"""
============================================================================
Unit Tests - Processed-Transaction Ledger
============================================================================

Reliability Level: SOVEREIGN TIER
Python 3.8 Compatible

Tests the durable dedup store:
- Reservation semantics (try_reserve / release / record)
- Flush-before-return persistence
- Retention cap (oldest evicted)
- Missing, corrupt and unwritable history files

============================================================================
"""

import json
import os
import sys
import threading
from decimal import Decimal
from typing import List

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.processed_ledger import ProcessedLedger
from services.remittance_models import (
    ProcessedRecord,
    ProcessingStatus,
    TaggedTransaction,
    DedupStoreError,
)


def make_record(tx_id: str, status: ProcessingStatus = ProcessingStatus.COMPLETED) -> ProcessedRecord:
    tagged = TaggedTransaction(
        tx_id=tx_id,
        source="GSOURCE",
        destination="GDEST",
        amount=Decimal("10.0000000"),
        asset="native",
        memo="EazeFi:test",
    )
    return ProcessedRecord.from_tagged(tagged, status)


@pytest.fixture
def history_path(tmp_path) -> str:
    return str(tmp_path / "data" / "transaction-history.json")


@pytest.fixture
def ledger(history_path: str) -> ProcessedLedger:
    store = ProcessedLedger(history_path, retention_cap=3)
    store.load()
    return store


class TestReservation:

    def test_reserve_once(self, ledger: ProcessedLedger) -> None:
        assert ledger.try_reserve("tx1") is True
        assert ledger.try_reserve("tx1") is False
        assert ledger.is_in_flight("tx1")
        assert not ledger.is_processed("tx1")

    def test_release_allows_reservation_again(self, ledger: ProcessedLedger) -> None:
        ledger.try_reserve("tx1")
        ledger.release("tx1")
        assert ledger.try_reserve("tx1") is True

    def test_record_clears_reservation_and_blocks_reserve(self, ledger: ProcessedLedger) -> None:
        ledger.try_reserve("tx1")
        ledger.record(make_record("tx1"))

        assert ledger.is_processed("tx1")
        assert not ledger.is_in_flight("tx1")
        assert ledger.try_reserve("tx1") is False

    def test_concurrent_reservations_single_winner(self, ledger: ProcessedLedger) -> None:
        winners = []  # type: List[bool]
        barrier = threading.Barrier(8)

        def contend() -> None:
            barrier.wait()
            winners.append(ledger.try_reserve("contended"))

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert winners.count(True) == 1

    def test_records_are_immutable(self, ledger: ProcessedLedger) -> None:
        ledger.record(make_record("tx1", ProcessingStatus.FAILED))
        ledger.record(make_record("tx1", ProcessingStatus.COMPLETED))

        assert ledger.get("tx1").status == ProcessingStatus.FAILED
        assert len(ledger) == 1


class TestPersistence:

    def test_missing_file_is_empty_store(self, history_path: str) -> None:
        store = ProcessedLedger(history_path)
        assert store.load() == 0
        assert len(store) == 0

    def test_record_flushes_before_return(self, ledger: ProcessedLedger, history_path: str) -> None:
        ledger.record(make_record("tx1"))

        with open(history_path, "r", encoding="utf-8") as handle:
            data = json.load(handle)

        assert [entry["hash"] for entry in data] == ["tx1"]
        assert data[0]["status"] == "completed"
        assert not [name for name in os.listdir(os.path.dirname(history_path)) if name.endswith(".tmp")]

    def test_reload_restores_records(self, ledger: ProcessedLedger, history_path: str) -> None:
        ledger.record(make_record("tx1"))
        ledger.record(make_record("tx2", ProcessingStatus.FAILED))

        restarted = ProcessedLedger(history_path, retention_cap=3)
        assert restarted.load() == 2
        assert restarted.is_processed("tx1")
        assert restarted.get("tx2").status == ProcessingStatus.FAILED
        assert restarted.try_reserve("tx1") is False

    def test_reads_legacy_history_file(self, history_path: str) -> None:
        os.makedirs(os.path.dirname(history_path))
        with open(history_path, "w", encoding="utf-8") as handle:
            json.dump([
                {"hash": "old", "timestamp": "2024-01-01T00:00:00.000Z", "from": "G1",
                 "to": "", "amount": "", "memo": "EazeFi:x", "status": "processed"},
                {"hash": "new", "timestamp": "2024-01-02T00:00:00.000Z", "from": "G1",
                 "to": "G2", "amount": "5.0000000", "memo": "EazeFi:y", "status": "completed"},
            ], handle)

        store = ProcessedLedger(history_path)
        assert store.load() == 2
        assert store.is_processed("old")
        assert store.is_processed("new")

    def test_corrupt_file_raises(self, history_path: str) -> None:
        os.makedirs(os.path.dirname(history_path))
        with open(history_path, "w", encoding="utf-8") as handle:
            handle.write("{not json")

        with pytest.raises(DedupStoreError) as exc_info:
            ProcessedLedger(history_path).load()
        assert exc_info.value.error_code == "REM-STO-001"

    def test_non_list_file_raises(self, history_path: str) -> None:
        os.makedirs(os.path.dirname(history_path))
        with open(history_path, "w", encoding="utf-8") as handle:
            json.dump({"hash": "tx1"}, handle)

        with pytest.raises(DedupStoreError):
            ProcessedLedger(history_path).load()

    def test_write_failure_raises(self, tmp_path) -> None:
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("file")
        store = ProcessedLedger(str(blocker / "history.json"))
        store.load()

        with pytest.raises(DedupStoreError) as exc_info:
            store.record(make_record("tx1"))

        assert exc_info.value.error_code == "REM-STO-002"
        # Kept in memory so the same process never re-handles it
        assert store.is_processed("tx1")
        assert store.halted

    def test_halt_is_sticky(self, ledger: ProcessedLedger) -> None:
        assert not ledger.halted
        ledger.halt()
        ledger.halt()
        assert ledger.halted


class TestRetention:

    def test_oldest_evicted_above_cap(self, ledger: ProcessedLedger, history_path: str) -> None:
        for tx_id in ["tx1", "tx2", "tx3", "tx4"]:
            ledger.record(make_record(tx_id))

        assert len(ledger) == 3
        assert not ledger.is_processed("tx1")
        assert [record.tx_id for record in ledger.records()] == ["tx2", "tx3", "tx4"]

        with open(history_path, "r", encoding="utf-8") as handle:
            assert [entry["hash"] for entry in json.load(handle)] == ["tx2", "tx3", "tx4"]

    def test_load_keeps_newest(self, history_path: str) -> None:
        os.makedirs(os.path.dirname(history_path))
        with open(history_path, "w", encoding="utf-8") as handle:
            json.dump([make_record(f"tx{i}").to_dict() for i in range(5)], handle)

        store = ProcessedLedger(history_path, retention_cap=2)
        assert store.load() == 2
        assert [record.tx_id for record in store.records()] == ["tx3", "tx4"]

    def test_invalid_cap_rejected(self, history_path: str) -> None:
        with pytest.raises(ValueError):
            ProcessedLedger(history_path, retention_cap=0)
