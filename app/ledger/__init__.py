# ============================================================================
# EazeFi Remittance Monitor v1.0.0
# Ledger Integration Module - Horizon Connectivity
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Stellar ledger access for the remittance monitor
#
# Components:
#   - DecimalGateway: Stroop-precision amounts, ROUND_HALF_UP conversion
#   - TokenBucket / ExponentialBackoff: Horizon request pacing
#   - IssuerSigner: Issuer keypair custody and payment signing
#   - HorizonClient: Accounts, history, submission, SSE subscriptions
#
# ============================================================================

from app.ledger.decimal_gateway import DecimalGateway, STROOP, MAX_LEDGER_AMOUNT
from app.ledger.rate_limiter import TokenBucket, ExponentialBackoff
from app.ledger.issuer_signer import (
    IssuerSigner,
    SignedEnvelope,
    MissingCredentialsError,
    NETWORK_PASSPHRASES,
)
from app.ledger.horizon_client import (
    HorizonClient,
    EventSubscription,
    LedgerClientError,
    LedgerUnavailableError,
    RateLimitError,
    AccountNotFoundError,
    LedgerRejectedError,
    DestinationIneligibleError,
    SubmissionOutcomeUnknownError,
    StreamDisconnectedError,
    DEFAULT_HORIZON_URLS,
)

__all__ = [
    'DecimalGateway',
    'STROOP',
    'MAX_LEDGER_AMOUNT',
    'TokenBucket',
    'ExponentialBackoff',
    'IssuerSigner',
    'SignedEnvelope',
    'MissingCredentialsError',
    'NETWORK_PASSPHRASES',
    'HorizonClient',
    'EventSubscription',
    'LedgerClientError',
    'LedgerUnavailableError',
    'RateLimitError',
    'AccountNotFoundError',
    'LedgerRejectedError',
    'DestinationIneligibleError',
    'SubmissionOutcomeUnknownError',
    'StreamDisconnectedError',
    'DEFAULT_HORIZON_URLS',
]

__version__ = '1.0.0'
