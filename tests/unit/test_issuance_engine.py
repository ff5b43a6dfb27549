"""
============================================================================
Unit Tests - Conversion & Issuance Engine
============================================================================

Reliability Level: SOVEREIGN TIER
Python 3.8 Compatible

Tests IssuanceEngine.handle():
- Reference scenario (10 XLM -> 2487.3 TSHT) with duplicate delivery
- Asset filtering and monitoring-only mode (no record)
- Trustline pre-check
- Failure classification: recorded vs deferred
- Concurrent handles of the same transaction
- Reconciled records
- Halted ledger withholds issuance; store writes run off the event loop

============================================================================
"""

import asyncio
import os
import sys
import threading
from decimal import Decimal

import pytest
from stellar_sdk import Keypair, Network, TransactionEnvelope

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.ledger.horizon_client import (
    LedgerUnavailableError,
    LedgerRejectedError,
    RateLimitError,
    SubmissionOutcomeUnknownError,
    DestinationIneligibleError,
)
from app.ledger.issuer_signer import IssuerSigner
from services.issuance_engine import IssuanceEngine
from services.processed_ledger import ProcessedLedger
from services.remittance_models import IssuanceOutcome, ProcessingStatus, DedupStoreError
from tests.fakes import FakeHorizon, make_tagged, trustline


@pytest.fixture
def issuer() -> Keypair:
    return Keypair.random()


@pytest.fixture
def horizon(issuer: Keypair) -> FakeHorizon:
    return FakeHorizon(issuer.public_key)


@pytest.fixture
def ledger(tmp_path) -> ProcessedLedger:
    store = ProcessedLedger(str(tmp_path / "history.json"))
    store.load()
    return store


@pytest.fixture
def engine(ledger: ProcessedLedger, horizon: FakeHorizon, issuer: Keypair) -> IssuanceEngine:
    return IssuanceEngine(
        ledger=ledger,
        client=horizon,
        signer=IssuerSigner(secret=issuer.secret, network="TESTNET"),
        exchange_rate=Decimal("248.73"),
        target_asset_code="TSHT",
        target_asset_issuer=None,
    )


def eligible_destination(horizon: FakeHorizon, issuer: Keypair) -> str:
    destination = Keypair.random().public_key
    horizon.add_destination(destination, [trustline("TSHT", issuer.public_key)])
    return destination


class TestReferenceScenario:

    @pytest.mark.asyncio
    async def test_issue_once_with_duplicate_delivery(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        tagged = make_tagged(destination=eligible_destination(horizon, issuer), amount="10.0000000")

        first = await engine.handle(tagged)
        second = await engine.handle(tagged)

        assert first == IssuanceOutcome.ISSUED
        assert second == IssuanceOutcome.DUPLICATE
        assert len(horizon.submissions) == 1

        record = ledger.get(tagged.tx_id)
        assert record.status == ProcessingStatus.COMPLETED
        assert record.issued_amount == Decimal("2487.3000000")
        assert record.issuance_tx_id == "issuance-1"
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_submitted_envelope(
        self, engine: IssuanceEngine, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        tagged = make_tagged(destination=eligible_destination(horizon, issuer))

        await engine.handle(tagged)

        envelope = TransactionEnvelope.from_xdr(
            horizon.submissions[0], Network.TESTNET_NETWORK_PASSPHRASE
        )
        tx = envelope.transaction
        assert tx.sequence == 101
        assert tx.memo.memo_text == f"TSHT Remittance for {tagged.tx_id[:8]}".encode()
        payment = tx.operations[0]
        assert payment.destination.account_id == tagged.destination
        assert payment.asset.code == "TSHT"
        assert payment.asset.issuer == issuer.public_key
        assert Decimal(payment.amount) == Decimal("2487.3")

    @pytest.mark.asyncio
    async def test_concurrent_handles_issue_once(
        self, engine: IssuanceEngine, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        horizon.submit_delay = 0.01
        tagged = make_tagged(destination=eligible_destination(horizon, issuer))

        outcomes = await asyncio.gather(*[engine.handle(tagged) for _ in range(5)])

        assert outcomes.count(IssuanceOutcome.ISSUED) == 1
        assert outcomes.count(IssuanceOutcome.DUPLICATE) == 4
        assert len(horizon.submissions) == 1

    @pytest.mark.asyncio
    async def test_submissions_use_consecutive_sequences(
        self, engine: IssuanceEngine, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        horizon.submit_delay = 0.01
        batch = [make_tagged(destination=eligible_destination(horizon, issuer)) for _ in range(3)]

        outcomes = await asyncio.gather(*[engine.handle(tagged) for tagged in batch])

        assert outcomes == [IssuanceOutcome.ISSUED] * 3
        sequences = sorted(
            TransactionEnvelope.from_xdr(xdr, Network.TESTNET_NETWORK_PASSPHRASE).transaction.sequence
            for xdr in horizon.submissions
        )
        assert sequences == [101, 102, 103]

    @pytest.mark.asyncio
    async def test_record_written_off_the_event_loop(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon,
        issuer: Keypair, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        writer_threads = []
        write = ledger.record

        def tracking_record(entry):
            writer_threads.append(threading.get_ident())
            write(entry)

        monkeypatch.setattr(ledger, "record", tracking_record)
        tagged = make_tagged(destination=eligible_destination(horizon, issuer))

        assert await engine.handle(tagged) == IssuanceOutcome.ISSUED
        assert len(writer_threads) == 1
        assert writer_threads[0] != threading.get_ident()
        assert ledger.is_processed(tagged.tx_id)


class TestSkips:

    @pytest.mark.asyncio
    async def test_other_asset_skipped_without_record(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon
    ) -> None:
        tagged = make_tagged(asset="USDC:GISSUER")

        assert await engine.handle(tagged) == IssuanceOutcome.SKIPPED_ASSET
        assert len(ledger) == 0
        assert not ledger.is_in_flight(tagged.tx_id)
        assert horizon.submissions == []

    @pytest.mark.asyncio
    async def test_monitor_only_skips_without_record(
        self, ledger: ProcessedLedger, horizon: FakeHorizon
    ) -> None:
        engine = IssuanceEngine(
            ledger=ledger,
            client=horizon,
            signer=None,
            exchange_rate=Decimal("248.73"),
            target_asset_code="TSHT",
            target_asset_issuer=None,
        )
        tagged = make_tagged()

        assert engine.monitor_only
        assert await engine.handle(tagged) == IssuanceOutcome.SKIPPED_MONITOR_ONLY
        assert len(ledger) == 0
        assert ledger.try_reserve(tagged.tx_id)

    @pytest.mark.asyncio
    async def test_zero_converted_amount_recorded_failed(
        self, ledger: ProcessedLedger, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        engine = IssuanceEngine(
            ledger=ledger,
            client=horizon,
            signer=IssuerSigner(secret=issuer.secret),
            exchange_rate=Decimal("0.4"),
            target_asset_code="TSHT",
            target_asset_issuer=None,
        )
        tagged = make_tagged(amount="0.0000001")

        assert await engine.handle(tagged) == IssuanceOutcome.FAILED
        assert ledger.get(tagged.tx_id).error_code == "REM-ISS-004"
        assert horizon.submissions == []

    @pytest.mark.asyncio
    async def test_conversion_overflow_recorded_failed(
        self, ledger: ProcessedLedger, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        engine = IssuanceEngine(
            ledger=ledger,
            client=horizon,
            signer=IssuerSigner(secret=issuer.secret),
            exchange_rate=Decimal("1E+30"),
            target_asset_code="TSHT",
            target_asset_issuer=None,
        )
        tagged = make_tagged(amount="10.0000000")

        assert await engine.handle(tagged) == IssuanceOutcome.FAILED
        assert ledger.get(tagged.tx_id).error_code == "REM-ISS-004"
        assert not ledger.is_in_flight(tagged.tx_id)
        assert horizon.submissions == []


class TestTrustline:

    @pytest.mark.asyncio
    async def test_missing_destination_account(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon
    ) -> None:
        tagged = make_tagged()

        assert await engine.handle(tagged) == IssuanceOutcome.FAILED
        record = ledger.get(tagged.tx_id)
        assert record.status == ProcessingStatus.FAILED
        assert record.error_code == "REM-ISS-002"
        assert horizon.submissions == []

    @pytest.mark.asyncio
    async def test_missing_trustline(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon
    ) -> None:
        destination = Keypair.random().public_key
        horizon.add_destination(destination, [trustline("USDC", Keypair.random().public_key)])
        tagged = make_tagged(destination=destination)

        assert await engine.handle(tagged) == IssuanceOutcome.FAILED
        assert ledger.get(tagged.tx_id).error_code == "REM-ISS-002"

    @pytest.mark.asyncio
    async def test_unauthorized_trustline(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        destination = Keypair.random().public_key
        horizon.add_destination(destination, [trustline("TSHT", issuer.public_key, authorized=False)])

        assert await engine.handle(make_tagged(destination=destination)) == IssuanceOutcome.FAILED

    @pytest.mark.asyncio
    async def test_full_trustline(
        self, engine: IssuanceEngine, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        destination = Keypair.random().public_key
        horizon.add_destination(
            destination, [trustline("TSHT", issuer.public_key, balance="100.0000000", limit="1000.0000000")]
        )

        assert await engine.handle(make_tagged(destination=destination)) == IssuanceOutcome.FAILED

    @pytest.mark.asyncio
    async def test_check_can_be_disabled(
        self, ledger: ProcessedLedger, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        engine = IssuanceEngine(
            ledger=ledger,
            client=horizon,
            signer=IssuerSigner(secret=issuer.secret),
            exchange_rate=Decimal("248.73"),
            target_asset_code="TSHT",
            target_asset_issuer=None,
            verify_trustline=False,
        )

        assert await engine.handle(make_tagged()) == IssuanceOutcome.ISSUED


class TestFailureClassification:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,code", [
        (LedgerRejectedError("tx_failed", {"transaction": "tx_failed"}), "REM-ISS-001"),
        (DestinationIneligibleError("op_no_trust"), "REM-ISS-002"),
        (SubmissionOutcomeUnknownError("timeout"), "REM-ISS-003"),
    ])
    async def test_recorded_failures(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon,
        issuer: Keypair, error: Exception, code: str
    ) -> None:
        horizon.submit_errors.append(error)
        tagged = make_tagged(destination=eligible_destination(horizon, issuer))

        assert await engine.handle(tagged) == IssuanceOutcome.FAILED
        record = ledger.get(tagged.tx_id)
        assert record.status == ProcessingStatus.FAILED
        assert record.error_code == code
        # No automatic retry
        assert await engine.handle(tagged) == IssuanceOutcome.DUPLICATE
        assert len(horizon.submissions) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        LedgerUnavailableError("tx_bad_seq before apply"),
        RateLimitError("budget exhausted"),
    ])
    async def test_not_applied_failures_are_deferred(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon,
        issuer: Keypair, error: Exception
    ) -> None:
        horizon.submit_errors.append(error)
        tagged = make_tagged(destination=eligible_destination(horizon, issuer))

        assert await engine.handle(tagged) == IssuanceOutcome.DEFERRED
        assert len(ledger) == 0

        # Replayable later
        assert await engine.handle(tagged) == IssuanceOutcome.ISSUED

    @pytest.mark.asyncio
    async def test_issuer_account_unavailable_is_deferred(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        horizon.load_errors[issuer.public_key] = LedgerUnavailableError("503")
        tagged = make_tagged(destination=eligible_destination(horizon, issuer))

        assert await engine.handle(tagged) == IssuanceOutcome.DEFERRED
        assert horizon.submissions == []
        assert not ledger.is_in_flight(tagged.tx_id)

    @pytest.mark.asyncio
    async def test_store_failure_propagates(
        self, horizon: FakeHorizon, issuer: Keypair, tmp_path
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        ledger = ProcessedLedger(str(blocker / "history.json"))
        engine = IssuanceEngine(
            ledger=ledger,
            client=horizon,
            signer=IssuerSigner(secret=issuer.secret),
            exchange_rate=Decimal("248.73"),
            target_asset_code="TSHT",
            target_asset_issuer=None,
            verify_trustline=False,
        )

        with pytest.raises(DedupStoreError):
            await engine.handle(make_tagged())

        assert ledger.halted
        assert len(horizon.submissions) == 1

    @pytest.mark.asyncio
    async def test_halted_ledger_withholds_issuance(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon, issuer: Keypair
    ) -> None:
        ledger.halt()
        tagged = make_tagged(destination=eligible_destination(horizon, issuer))

        outcome = await engine.handle(tagged)

        assert outcome == IssuanceOutcome.DEFERRED
        assert horizon.submissions == []
        assert not ledger.is_in_flight(tagged.tx_id)
        assert not ledger.is_processed(tagged.tx_id)

    @pytest.mark.asyncio
    async def test_waiting_handles_withheld_once_store_fails(
        self, horizon: FakeHorizon, issuer: Keypair, tmp_path
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        ledger = ProcessedLedger(str(blocker / "history.json"))
        engine = IssuanceEngine(
            ledger=ledger,
            client=horizon,
            signer=IssuerSigner(secret=issuer.secret),
            exchange_rate=Decimal("248.73"),
            target_asset_code="TSHT",
            target_asset_issuer=None,
            verify_trustline=False,
        )
        horizon.submit_delay = 0.05

        results = await asyncio.gather(
            *[engine.handle(make_tagged()) for _ in range(3)], return_exceptions=True
        )

        assert len(horizon.submissions) == 1
        assert sum(isinstance(result, DedupStoreError) for result in results) == 1
        assert results.count(IssuanceOutcome.DEFERRED) == 2


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_record_reconciled_does_not_submit(
        self, engine: IssuanceEngine, ledger: ProcessedLedger, horizon: FakeHorizon
    ) -> None:
        tagged = make_tagged()

        assert await engine.record_reconciled(tagged, "prior-issuance") == IssuanceOutcome.RECONCILED
        assert await engine.handle(tagged) == IssuanceOutcome.DUPLICATE

        record = ledger.get(tagged.tx_id)
        assert record.status == ProcessingStatus.COMPLETED
        assert record.issuance_tx_id == "prior-issuance"
        assert horizon.submissions == []
