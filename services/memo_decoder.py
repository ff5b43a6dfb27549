"""
============================================================================
Remittance Monitor - Memo/Marker Decoder
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Amounts pass through DecimalGateway (7 places)

Validation boundary between raw Horizon records and the typed
TaggedTransaction the engine consumes. Nothing past this module handles
untyped ledger JSON.

ERROR CODES:
    - REM-DEC-001: Transaction could not be decoded (logged, never raised)

============================================================================
"""

from typing import Optional, Dict, Any
import logging

from app.ledger.decimal_gateway import DecimalGateway
from services.remittance_models import (
    TaggedTransaction,
    RemittanceErrorCode,
    asset_identifier,
    parse_timestamp,
)

# Configure module logger
logger = logging.getLogger(__name__)


# Horizon memo_type of a text memo
MEMO_TYPE_TEXT = "text"

# Horizon operation type of a plain payment
PAYMENT_OPERATION = "payment"


class MemoDecoder:
    """
    Recognises application-tagged transactions and decodes them.

    is_tagged() looks at the transaction only; decode() combines the
    transaction with one of its payment operations.

    Example Usage:
        decoder = MemoDecoder("EazeFi:")
        if decoder.is_tagged(tx):
            tagged = decoder.decode(tx, payment_op)
    """

    def __init__(self, prefix: str, gateway: Optional[DecimalGateway] = None):
        if not prefix:
            raise ValueError("Memo prefix must not be empty")
        self._prefix = prefix
        self._gateway = gateway or DecimalGateway()

    @property
    def prefix(self) -> str:
        return self._prefix

    def is_tagged(self, raw_tx: Any) -> bool:
        """
        True iff the transaction carries a text memo starting with the prefix.

        Pure; never raises.
        """
        if not isinstance(raw_tx, dict):
            return False
        if raw_tx.get("memo_type") != MEMO_TYPE_TEXT:
            return False
        memo = raw_tx.get("memo")
        return isinstance(memo, str) and memo.startswith(self._prefix)

    def decode(
        self,
        raw_tx: Dict[str, Any],
        payment_op: Dict[str, Any],
        correlation_id: Optional[str] = None
    ) -> Optional[TaggedTransaction]:
        """
        Build a TaggedTransaction from a transaction and a payment operation.

        Returns:
            TaggedTransaction, or None if the pair is not a well-formed
            tagged payment (reason logged at warning)
        """
        if not self.is_tagged(raw_tx):
            return None
        if not isinstance(payment_op, dict):
            return self._reject(raw_tx, "payment operation is not an object", correlation_id)

        if payment_op.get("type") != PAYMENT_OPERATION:
            # Path payments, account merges etc. share the payments feed
            logger.debug(
                f"[REM-DEC] Skipping non-payment operation | "
                f"type={payment_op.get('type')} | tx_id={raw_tx.get('hash')}"
            )
            return None

        tx_id = raw_tx.get("hash") or payment_op.get("transaction_hash")
        if not isinstance(tx_id, str) or not tx_id:
            return self._reject(raw_tx, "missing transaction hash", correlation_id)

        op_tx_hash = payment_op.get("transaction_hash")
        if op_tx_hash and op_tx_hash != tx_id:
            return self._reject(
                raw_tx, f"operation belongs to transaction {op_tx_hash}", correlation_id
            )

        source = payment_op.get("from")
        destination = payment_op.get("to")
        if not isinstance(source, str) or not source:
            return self._reject(raw_tx, "missing payment source", correlation_id)
        if not isinstance(destination, str) or not destination:
            return self._reject(raw_tx, "missing payment destination", correlation_id)

        asset = asset_identifier(
            payment_op.get("asset_type"),
            payment_op.get("asset_code"),
            payment_op.get("asset_issuer"),
        )
        if asset is None:
            return self._reject(raw_tx, "missing or malformed asset", correlation_id)

        raw_amount = payment_op.get("amount")
        if not isinstance(raw_amount, str):
            return self._reject(raw_tx, f"amount is not a string: {raw_amount!r}", correlation_id)
        try:
            amount = self._gateway.to_amount(raw_amount, correlation_id=correlation_id)
        except ValueError:
            return self._reject(raw_tx, f"malformed amount {raw_amount!r}", correlation_id)
        if amount <= 0:
            return self._reject(raw_tx, f"non-positive amount {amount}", correlation_id)

        return TaggedTransaction(
            tx_id=tx_id,
            source=source,
            destination=destination,
            amount=amount,
            asset=asset,
            memo=raw_tx["memo"],
            ledger_timestamp=parse_timestamp(raw_tx.get("created_at") or payment_op.get("created_at")),
            operation_id=str(payment_op["id"]) if payment_op.get("id") is not None else None,
        )

    def _reject(
        self,
        raw_tx: Dict[str, Any],
        reason: str,
        correlation_id: Optional[str]
    ) -> None:
        logger.warning(
            f"[{RemittanceErrorCode.DECODE_FAIL}] Tagged transaction not decodable | "
            f"tx_id={raw_tx.get('hash')} | reason={reason} | correlation_id={correlation_id}"
        )
        return None
