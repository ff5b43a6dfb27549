# ============================================================================
# EazeFi Remittance Monitor v1.0.0
# Issuer Signer - Issuing Identity Custody
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Builds and signs issuance payments with the issuer keypair
#
# SOVEREIGN MANDATE:
#   - The issuer secret is loaded ONLY from configuration/environment
#   - The secret NEVER appears in logs or source code
#   - REM-SEC-001 raised if the secret is missing or malformed
#
# ============================================================================

import os
import logging
from dataclasses import dataclass
from typing import Optional

from stellar_sdk import Account, Asset, Keypair, Network, TransactionBuilder

logger = logging.getLogger(__name__)


NETWORK_PASSPHRASES = {
    "TESTNET": Network.TESTNET_NETWORK_PASSPHRASE,
    "PUBLIC": Network.PUBLIC_NETWORK_PASSPHRASE,
}

# Base fee per operation in stroops
DEFAULT_BASE_FEE = 100

# Validity window of a built envelope in seconds
DEFAULT_TX_TIMEOUT_SECONDS = 180


class IssuerSignerError(Exception):
    """Base exception for issuer signer errors."""
    pass


class MissingCredentialsError(IssuerSignerError):
    """Raised when the issuer secret is missing or malformed (REM-SEC-001)."""
    pass


@dataclass(frozen=True)
class SignedEnvelope:
    """A signed transaction ready for submission."""
    envelope_xdr: str
    tx_hash: str
    sequence: int


class IssuerSigner:
    """
    Issuer identity - builds and signs issuance payments.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: ISSUER_SECRET (argument or environment variable)
    Side Effects: Raises REM-SEC-001 if the secret is missing or invalid

    Example Usage:
        signer = IssuerSigner(network="TESTNET")
        signed = signer.sign_payment(
            sequence=123, destination="GD...", asset_code="TSHT",
            asset_issuer="GB...", amount="2487.3000000", memo="TSHT Remittance for 1a2b3c4d",
        )
    """

    ENV_SECRET = "ISSUER_SECRET"

    def __init__(
        self,
        secret: Optional[str] = None,
        network: str = "TESTNET",
        base_fee: int = DEFAULT_BASE_FEE,
        correlation_id: Optional[str] = None
    ):
        """
        Args:
            secret: Issuer secret seed (default: ISSUER_SECRET env var)
            network: "TESTNET" or "PUBLIC"
            base_fee: Fee per operation in stroops
            correlation_id: Audit trail identifier

        Raises:
            MissingCredentialsError: If the secret is absent or malformed
            ValueError: If the network is unknown
        """
        self.correlation_id = correlation_id

        if network not in NETWORK_PASSPHRASES:
            raise ValueError(f"Unknown network '{network}', expected TESTNET or PUBLIC")
        self._network_passphrase = NETWORK_PASSPHRASES[network]
        self._base_fee = base_fee

        secret = secret if secret is not None else os.getenv(self.ENV_SECRET)
        if not secret:
            logger.error(
                f"[REM-SEC-001] Missing issuer secret | "
                f"variable={self.ENV_SECRET} | correlation_id={correlation_id}"
            )
            raise MissingCredentialsError(
                f"REM-SEC-001: Issuer secret not set ({self.ENV_SECRET})"
            )

        try:
            self._keypair = Keypair.from_secret(secret.strip())
        except ValueError as e:
            # Never echo the offending value
            logger.error(
                f"[REM-SEC-001] Invalid issuer secret | secret=[REDACTED] | "
                f"correlation_id={correlation_id}"
            )
            raise MissingCredentialsError("REM-SEC-001: Invalid issuer secret") from e

        logger.info(
            f"[REM-SEC] Issuer signer initialized | "
            f"issuer={self.get_redacted_key()} | secret=[REDACTED] | "
            f"correlation_id={correlation_id}"
        )

    @property
    def public_key(self) -> str:
        return self._keypair.public_key

    def sign_payment(
        self,
        sequence: int,
        destination: str,
        asset_code: str,
        asset_issuer: str,
        amount: str,
        memo: str
    ) -> SignedEnvelope:
        """
        Build one payment from the issuer and sign it.

        Args:
            sequence: Issuer's current account sequence (as loaded)
            destination: Recipient account id
            asset_code: Issued asset code
            asset_issuer: Issued asset issuer account id
            amount: Amount string with at most 7 decimals
            memo: Text memo, at most 28 bytes

        Returns:
            SignedEnvelope with XDR and transaction hash
        """
        source = Account(self.public_key, sequence)
        envelope = (
            TransactionBuilder(
                source_account=source,
                network_passphrase=self._network_passphrase,
                base_fee=self._base_fee,
            )
            .append_payment_op(
                destination=destination,
                asset=Asset(asset_code, asset_issuer),
                amount=amount,
            )
            .add_text_memo(memo)
            .set_timeout(DEFAULT_TX_TIMEOUT_SECONDS)
            .build()
        )
        envelope.sign(self._keypair)

        return SignedEnvelope(
            envelope_xdr=envelope.to_xdr(),
            tx_hash=envelope.hash_hex(),
            sequence=sequence + 1,
        )

    def get_redacted_key(self) -> str:
        """Public key shortened for logs (first 4 and last 4 characters)."""
        key = self.public_key
        return f"{key[:4]}...{key[-4:]}"
