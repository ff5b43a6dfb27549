"""
============================================================================
Remittance Monitor - Backfill Scanner
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Scan summary logged with correlation_id

Runs once at startup. Lists the monitored account's most recent
transactions and replays every tagged, unprocessed one through the
IssuanceEngine, so payments that arrived while the monitor was down are
not lost. Because the engine deduplicates by tx_id, a backfill racing the
live stream converges to one issuance per transaction.

RECONCILIATION:
    Issuance payments carry "<issuance memo prefix><first 8 hash chars>".
    If an issuer-sourced transaction in the page already carries the trace
    memo of an unprocessed tagged transaction, the issuance happened but was
    never recorded; the engine records it without submitting again.

ERROR CODES:
    - REM-BKF-001: Backfill scan failed (logged, never fatal)

============================================================================
"""

from dataclasses import dataclass, asdict
from typing import Dict, Any, List
import logging
import uuid

from app.ledger.horizon_client import HorizonClient, LedgerClientError
from app.observability.metrics import record_tagged_transaction
from services.issuance_engine import IssuanceEngine
from services.ledger_feeds import expand_tagged_transaction
from services.memo_decoder import MemoDecoder, MEMO_TYPE_TEXT
from services.processed_ledger import ProcessedLedger
from services.remittance_models import IssuanceOutcome, RemittanceErrorCode, TRACE_HASH_LENGTH

# Configure module logger
logger = logging.getLogger(__name__)


# Metric origin label for backfilled transactions
BACKFILL_ORIGIN = "backfill"


@dataclass
class BackfillReport:
    """Summary of one backfill pass."""
    scanned: int = 0
    tagged: int = 0
    issued: int = 0
    failed: int = 0
    reconciled: int = 0
    duplicates: int = 0
    skipped: int = 0
    deferred: int = 0
    errors: int = 0

    def count(self, outcome: IssuanceOutcome) -> None:
        if outcome == IssuanceOutcome.ISSUED:
            self.issued += 1
        elif outcome == IssuanceOutcome.FAILED:
            self.failed += 1
        elif outcome == IssuanceOutcome.RECONCILED:
            self.reconciled += 1
        elif outcome == IssuanceOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome == IssuanceOutcome.DEFERRED:
            self.deferred += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BackfillScanner:
    """
    One-shot startup scan of recent transactions.

    Example Usage:
        scanner = BackfillScanner(client, decoder, engine, ledger, account_id)
        report = await scanner.scan()
    """

    def __init__(
        self,
        client: HorizonClient,
        decoder: MemoDecoder,
        engine: IssuanceEngine,
        ledger: ProcessedLedger,
        account_id: str,
        page_size: int = 50,
        issuance_memo_prefix: str = "TSHT Remittance for ",
    ) -> None:
        self._client = client
        self._decoder = decoder
        self._engine = engine
        self._ledger = ledger
        self._account_id = account_id
        self._page_size = page_size
        self._issuance_memo_prefix = issuance_memo_prefix

    async def scan(self) -> BackfillReport:
        """
        Scan the most recent page of the monitored account's transactions.

        Listing failures are logged (REM-BKF-001) and end the scan early.

        Raises:
            DedupStoreError: A record could not be persisted (fatal)
        """
        correlation_id = str(uuid.uuid4())
        report = BackfillReport()

        logger.info(
            f"[REM-BKF] Backfill started | account={self._account_id} | "
            f"limit={self._page_size} | correlation_id={correlation_id}"
        )

        try:
            transactions = await self._client.list_transactions(
                self._account_id, limit=self._page_size, order="desc"
            )
        except LedgerClientError as e:
            report.errors += 1
            logger.error(
                f"[{RemittanceErrorCode.BACKFILL_FAILED}] Cannot list transactions | "
                f"account={self._account_id} | error={e.message} | correlation_id={correlation_id}"
            )
            return report

        issued_fragments = self._issued_fragments(transactions)

        # Oldest first, matching arrival order
        for raw_tx in reversed(transactions):
            report.scanned += 1
            if not self._decoder.is_tagged(raw_tx):
                continue
            tx_id = raw_tx.get("hash")
            if not tx_id:
                continue
            if self._ledger.is_processed(tx_id):
                report.duplicates += 1
                continue

            try:
                candidates = await expand_tagged_transaction(
                    self._client, self._decoder, raw_tx, correlation_id=correlation_id
                )
            except LedgerClientError as e:
                report.errors += 1
                logger.error(
                    f"[{RemittanceErrorCode.BACKFILL_FAILED}] Cannot expand transaction | "
                    f"tx_id={tx_id} | error={e.message} | correlation_id={correlation_id}"
                )
                continue

            for tagged in candidates:
                report.tagged += 1
                record_tagged_transaction(BACKFILL_ORIGIN, correlation_id)
                issuance_tx_id = issued_fragments.get(tagged.trace_fragment)
                if issuance_tx_id is not None:
                    outcome = await self._engine.record_reconciled(tagged, issuance_tx_id)
                else:
                    outcome = await self._engine.handle(tagged)
                report.count(outcome)

        logger.info(
            f"[REM-BKF] Backfill complete | {' | '.join(f'{k}={v}' for k, v in report.to_dict().items())} | "
            f"correlation_id={correlation_id}"
        )
        return report

    def _issued_fragments(self, transactions: List[Dict[str, Any]]) -> Dict[str, str]:
        """
        Map trace-memo hash fragment -> issuance transaction hash.

        Only full-length fragments count; a shorter one would match
        unrelated transactions.
        """
        issuer = self._engine.issuer_public_key
        if issuer is None:
            return {}

        fragments = {}  # type: Dict[str, str]
        for raw_tx in transactions:
            if raw_tx.get("source_account") != issuer:
                continue
            if raw_tx.get("memo_type") != MEMO_TYPE_TEXT:
                continue
            memo = raw_tx.get("memo")
            if not isinstance(memo, str) or not memo.startswith(self._issuance_memo_prefix):
                continue
            fragment = memo[len(self._issuance_memo_prefix):]
            if len(fragment) != TRACE_HASH_LENGTH:
                logger.warning(
                    f"[REM-BKF] Ignoring issuance memo without a full hash fragment | "
                    f"issuance_tx_id={raw_tx.get('hash')} | memo={memo!r}"
                )
                continue
            fragments[fragment] = raw_tx.get("hash") or ""
        return fragments
