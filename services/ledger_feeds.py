"""
============================================================================
Remittance Monitor - Ledger Feeds
============================================================================

Reliability Level: L6 Critical
Traceability: All operations include correlation_id

FEED INTERFACE:
    A feed knows how to open one live subscription (from cursor "now") and
    how to turn one stream event into zero or more TaggedTransactions. The
    StreamSupervisor owns the connection lifecycle; feeds own the decoding.

Feeds:
    - PaymentFeed: payments touching the monitored account, transactions
      embedded (join=transactions)
    - LedgerMemoFeed: every ledger transaction; tagged ones are expanded
      into their payment operations

============================================================================
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
import logging

from app.ledger.horizon_client import HorizonClient, EventSubscription
from services.memo_decoder import MemoDecoder, PAYMENT_OPERATION
from services.remittance_models import TaggedTransaction

# Configure module logger
logger = logging.getLogger(__name__)


async def expand_tagged_transaction(
    client: HorizonClient,
    decoder: MemoDecoder,
    raw_tx: Dict[str, Any],
    correlation_id: Optional[str] = None
) -> List[TaggedTransaction]:
    """
    Decode every payment operation of a tagged transaction.

    Returns an empty list without any request if the transaction is not
    tagged. Several payments in one transaction share the tx_id; the engine
    issues for at most one of them.
    """
    if not decoder.is_tagged(raw_tx):
        return []

    operations = await client.list_operations(raw_tx["hash"])
    tagged = []  # type: List[TaggedTransaction]
    for operation in operations:
        if operation.get("type") != PAYMENT_OPERATION:
            continue
        decoded = decoder.decode(raw_tx, operation, correlation_id=correlation_id)
        if decoded is not None:
            tagged.append(decoded)
    return tagged


# =============================================================================
# Base Feed Class
# =============================================================================

class LedgerFeed(ABC):
    """
    Abstract live feed consumed by the StreamSupervisor.

    Reliability Level: L6 Critical
    Side Effects: Network I/O in open() and expand()
    """

    def __init__(
        self,
        name: str,
        client: HorizonClient,
        decoder: MemoDecoder,
        correlation_id: Optional[str] = None
    ):
        self.name = name
        self._client = client
        self._decoder = decoder
        self.correlation_id = correlation_id

    @abstractmethod
    def open(self, endpoint_index: int = 0) -> EventSubscription:
        """Subscription from cursor "now" against the given endpoint."""
        pass

    @abstractmethod
    async def expand(self, event: Dict[str, Any]) -> List[TaggedTransaction]:
        """
        Turn one stream event into tagged transactions.

        Raises:
            LedgerClientError: If a follow-up lookup fails
        """
        pass


class PaymentFeed(LedgerFeed):
    """Payments to and from the monitored account."""

    def __init__(
        self,
        client: HorizonClient,
        decoder: MemoDecoder,
        account_id: str,
        correlation_id: Optional[str] = None
    ):
        super().__init__("payments", client, decoder, correlation_id)
        self.account_id = account_id

    def open(self, endpoint_index: int = 0) -> EventSubscription:
        return self._client.stream_payments(
            self.account_id, cursor="now", endpoint_index=endpoint_index
        )

    async def expand(self, event: Dict[str, Any]) -> List[TaggedTransaction]:
        if event.get("type") != PAYMENT_OPERATION:
            return []

        raw_tx = event.get("transaction")
        if not isinstance(raw_tx, dict):
            tx_hash = event.get("transaction_hash")
            if not tx_hash:
                logger.warning(
                    f"[REM-DEC-001] Payment event without transaction | "
                    f"operation_id={event.get('id')} | correlation_id={self.correlation_id}"
                )
                return []
            raw_tx = await self._client.get_transaction(tx_hash)

        decoded = self._decoder.decode(raw_tx, event, correlation_id=self.correlation_id)
        return [decoded] if decoded is not None else []


class LedgerMemoFeed(LedgerFeed):
    """Every transaction on the ledger, filtered by memo prefix."""

    def __init__(
        self,
        client: HorizonClient,
        decoder: MemoDecoder,
        correlation_id: Optional[str] = None
    ):
        super().__init__("ledger-memos", client, decoder, correlation_id)

    def open(self, endpoint_index: int = 0) -> EventSubscription:
        return self._client.stream_transactions(cursor="now", endpoint_index=endpoint_index)

    async def expand(self, event: Dict[str, Any]) -> List[TaggedTransaction]:
        if event.get("successful") is False:
            return []
        return await expand_tagged_transaction(
            self._client, self._decoder, event, correlation_id=self.correlation_id
        )
