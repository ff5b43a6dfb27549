"""
============================================================================
Remittance Monitor - Core Data Models
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All amounts use decimal.Decimal at 7 places (one stroop)
Traceability: All operations include correlation_id for audit

This module defines the core data models of the remittance monitor:
- TaggedTransaction: A ledger payment carrying the application memo prefix
- ProcessedRecord: Persisted, immutable outcome of handling one transaction
- IssuanceIntent: Ephemeral issuance computation
- IssuanceOutcome: Result of one Engine.handle() call

ERROR CODES:
    - REM-CFG-001: Required configuration missing or invalid
    - REM-DEC-001: Transaction could not be decoded
    - REM-ISS-001: Issuance submission failed
    - REM-ISS-002: Destination ineligible (trustline)
    - REM-ISS-003: Issuance outcome unknown
    - REM-ISS-004: Converted amount not submittable
    - REM-ISS-005: Issuance deferred (not applied, replayable)
    - REM-STO-001: Dedup store unreadable
    - REM-STO-002: Dedup store write failed
    - REM-BKF-001: Backfill scan failed

============================================================================
"""

from decimal import Decimal
from typing import Optional, Dict, Any
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Native asset marker (Horizon asset_type for lumens)
NATIVE_ASSET = "native"

# Maximum size of a text memo in bytes
MEMO_TEXT_MAX_BYTES = 28

# Characters of the source hash embedded in the traceability memo
TRACE_HASH_LENGTH = 8


# =============================================================================
# Error Codes
# =============================================================================

class RemittanceErrorCode:
    """Remittance monitor error codes for audit logging."""
    CONFIG_INVALID = "REM-CFG-001"
    DECODE_FAIL = "REM-DEC-001"
    SUBMISSION_FAILED = "REM-ISS-001"
    DESTINATION_INELIGIBLE = "REM-ISS-002"
    OUTCOME_UNKNOWN = "REM-ISS-003"
    AMOUNT_NOT_SUBMITTABLE = "REM-ISS-004"
    DEFERRED = "REM-ISS-005"
    STORE_UNREADABLE = "REM-STO-001"
    STORE_WRITE_FAILED = "REM-STO-002"
    BACKFILL_FAILED = "REM-BKF-001"


class DedupStoreError(Exception):
    """
    Processed-transaction store could not be read or written.

    Always fatal: the monitor must not keep issuing what it cannot record.
    """

    def __init__(self, message: str, error_code: str = RemittanceErrorCode.STORE_WRITE_FAILED):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# Enums
# =============================================================================

class ProcessingStatus(Enum):
    """Final status of a processed transaction."""
    COMPLETED = "completed"
    FAILED = "failed"


class IssuanceOutcome(Enum):
    """
    Result of one Engine.handle() call.

    Only ISSUED, FAILED and RECONCILED create a ProcessedRecord.
    """
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    RECONCILED = "RECONCILED"
    DUPLICATE = "DUPLICATE"
    SKIPPED_ASSET = "SKIPPED_ASSET"
    SKIPPED_MONITOR_ONLY = "SKIPPED_MONITOR_ONLY"
    DEFERRED = "DEFERRED"


# =============================================================================
# Helpers
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a Horizon / history timestamp ("2024-01-15T10:30:00Z")."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as UTC ISO-8601 with a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def build_trace_memo(prefix: str, tx_id: str, max_bytes: int = MEMO_TEXT_MAX_BYTES) -> str:
    """
    Traceability memo for an issuance: prefix + first 8 chars of the source
    hash, cut to the memo byte limit without splitting a UTF-8 character.
    """
    memo = f"{prefix}{tx_id[:TRACE_HASH_LENGTH]}"
    encoded = memo.encode("utf-8")
    if len(encoded) <= max_bytes:
        return memo
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def asset_identifier(asset_type: Optional[str], code: Optional[str], issuer: Optional[str]) -> Optional[str]:
    """Normalise Horizon asset fields to "native" or "CODE:ISSUER"."""
    if asset_type == NATIVE_ASSET:
        return NATIVE_ASSET
    if asset_type and code and issuer:
        return f"{code}:{issuer}"
    return None


# =============================================================================
# TaggedTransaction
# =============================================================================

@dataclass(frozen=True)
class TaggedTransaction:
    """
    A ledger payment whose transaction memo carries the application prefix.

    tx_id is the ledger-assigned transaction hash and the sole dedup key:
    every observation of the same tx_id (stream or backfill) resolves to at
    most one issuance.
    """
    tx_id: str
    source: str
    destination: str
    amount: Decimal
    asset: str
    memo: str
    ledger_timestamp: Optional[datetime] = None
    operation_id: Optional[str] = None

    @property
    def trace_fragment(self) -> str:
        return self.tx_id[:TRACE_HASH_LENGTH]


# =============================================================================
# IssuanceIntent
# =============================================================================

@dataclass(frozen=True)
class IssuanceIntent:
    """Ephemeral issuance computation; never persisted on its own."""
    source_tx_id: str
    destination: str
    amount: Decimal
    asset_code: str
    asset_issuer: str
    memo: str


# =============================================================================
# ProcessedRecord
# =============================================================================

@dataclass(frozen=True)
class ProcessedRecord:
    """
    Immutable outcome of handling one TaggedTransaction.

    ============================================================================
    PERSISTED FIELDS (history file keys in brackets):
    ============================================================================
    - tx_id [hash]: Source transaction hash
    - processed_at [timestamp]: When the outcome was recorded
    - source [from], destination [to]: Payment parties
    - amount [amount]: Source amount
    - memo [memo]: Source memo
    - status [status]: completed | failed
    - issued_amount, issuance_tx_id, error_code, error_message: optional
    ============================================================================
    """
    tx_id: str
    processed_at: datetime
    source: str
    destination: str
    amount: Optional[Decimal]
    memo: str
    status: ProcessingStatus
    issued_amount: Optional[Decimal] = None
    issuance_tx_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_tagged(
        cls,
        tagged: TaggedTransaction,
        status: ProcessingStatus,
        issued_amount: Optional[Decimal] = None,
        issuance_tx_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        processed_at: Optional[datetime] = None
    ) -> "ProcessedRecord":
        return cls(
            tx_id=tagged.tx_id,
            processed_at=processed_at or datetime.now(timezone.utc),
            source=tagged.source,
            destination=tagged.destination,
            amount=tagged.amount,
            memo=tagged.memo,
            status=status,
            issued_amount=issued_amount,
            issuance_tx_id=issuance_tx_id,
            error_code=error_code,
            error_message=error_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the history file's key names."""
        data = {
            "hash": self.tx_id,
            "timestamp": format_timestamp(self.processed_at),
            "from": self.source,
            "to": self.destination,
            "amount": str(self.amount) if self.amount is not None else "",
            "memo": self.memo,
            "status": self.status.value,
        }  # type: Dict[str, Any]
        if self.issued_amount is not None:
            data["issued_amount"] = str(self.issued_amount)
        if self.issuance_tx_id:
            data["issuance_hash"] = self.issuance_tx_id
        if self.error_code:
            data["error_code"] = self.error_code
        if self.error_message:
            data["error"] = self.error_message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessedRecord":
        """
        Parse one history entry.

        Raises:
            ValueError: If the hash is missing or the status is unknown
        """
        tx_id = data.get("hash")
        if not isinstance(tx_id, str) or not tx_id:
            raise ValueError(f"History entry without hash: {data!r}")

        status_val = data.get("status")
        # Early history files wrote "processed" for successful issuances
        if status_val == "processed":
            status_val = ProcessingStatus.COMPLETED.value
        status = ProcessingStatus(status_val)

        amount_val = data.get("amount")
        amount = Decimal(str(amount_val)) if amount_val not in (None, "") else None
        issued_val = data.get("issued_amount")
        issued_amount = Decimal(str(issued_val)) if issued_val not in (None, "") else None

        return cls(
            tx_id=tx_id,
            processed_at=parse_timestamp(data.get("timestamp")) or datetime.now(timezone.utc),
            source=data.get("from") or "",
            destination=data.get("to") or "",
            amount=amount,
            memo=data.get("memo") or "",
            status=status,
            issued_amount=issued_amount,
            issuance_tx_id=data.get("issuance_hash"),
            error_code=data.get("error_code"),
            error_message=data.get("error"),
        )
