"""
============================================================================
EazeFi Remittance Monitor v1.0.0
Observability Module - Prometheus Metrics
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: None
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    STREAM_EVENTS,
    TAGGED_TRANSACTIONS,
    ISSUANCE_OUTCOMES,
    ISSUED_AMOUNT,
    ISSUANCE_LATENCY,
    STREAM_RECONNECTS,
    STREAM_STATE,
    PROCESSED_RECORDS,
    record_stream_event,
    record_tagged_transaction,
    record_issuance_outcome,
    observe_issuance_latency,
    record_stream_reconnect,
    update_stream_state,
    update_processed_records,
    start_metrics_server,
)

__all__ = [
    "STREAM_EVENTS",
    "TAGGED_TRANSACTIONS",
    "ISSUANCE_OUTCOMES",
    "ISSUED_AMOUNT",
    "ISSUANCE_LATENCY",
    "STREAM_RECONNECTS",
    "STREAM_STATE",
    "PROCESSED_RECORDS",
    "record_stream_event",
    "record_tagged_transaction",
    "record_issuance_outcome",
    "observe_issuance_latency",
    "record_stream_reconnect",
    "update_stream_state",
    "update_processed_records",
    "start_metrics_server",
]
