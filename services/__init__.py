"""
============================================================================
EazeFi Remittance Monitor - Services Layer
============================================================================

Monitor services: tagged-transaction decoding, durable deduplication,
conversion and issuance, live feed supervision and startup backfill.

Reliability Level: L6 Critical
============================================================================
"""

from services.remittance_models import (
    TaggedTransaction,
    ProcessedRecord,
    IssuanceIntent,
    IssuanceOutcome,
    ProcessingStatus,
    RemittanceErrorCode,
    DedupStoreError,
    build_trace_memo,
)

from services.remittance_config import (
    RemittanceConfig,
    RemittanceConfigurationError,
    get_remittance_config,
    reset_remittance_config,
)

from services.processed_ledger import ProcessedLedger
from services.memo_decoder import MemoDecoder
from services.ledger_feeds import (
    LedgerFeed,
    PaymentFeed,
    LedgerMemoFeed,
    expand_tagged_transaction,
)
from services.issuance_engine import IssuanceEngine
from services.backfill_scanner import BackfillScanner, BackfillReport
from services.stream_supervisor import StreamSupervisor, StreamState

__all__ = [
    # Models
    "TaggedTransaction",
    "ProcessedRecord",
    "IssuanceIntent",
    "IssuanceOutcome",
    "ProcessingStatus",
    "RemittanceErrorCode",
    "DedupStoreError",
    "build_trace_memo",
    # Configuration
    "RemittanceConfig",
    "RemittanceConfigurationError",
    "get_remittance_config",
    "reset_remittance_config",
    # Store
    "ProcessedLedger",
    # Decoding
    "MemoDecoder",
    "LedgerFeed",
    "PaymentFeed",
    "LedgerMemoFeed",
    "expand_tagged_transaction",
    # Engine
    "IssuanceEngine",
    "BackfillScanner",
    "BackfillReport",
    # Supervision
    "StreamSupervisor",
    "StreamState",
]
