# ============================================================================
# EazeFi Remittance Monitor v1.0.0
# Token Bucket Rate Limiter - Horizon Request Budget
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Keeps REST request frequency inside the Horizon per-IP budget
#
# SOVEREIGN MANDATE:
#   - Thread-safe with mutex lock (non-negotiable)
#   - Exponential backoff on HTTP 429 / 5xx / timeouts
#   - Streaming connections do NOT consume tokens
#
# Horizon Rate Limits (public SDF instances):
#   - 3600 requests per hour per IP
#   - Refill Rate: 1 token per second
#
# Error Codes:
#   - REM-LED-004: Local request budget exhausted
#
# ============================================================================

import random
import threading
import time
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Thread-Safe Token Bucket Rate Limiter.

    Reliability Level: SOVEREIGN TIER
    Thread Safety: Mutex lock on consume() and _refill()
    Capacity: 3600 tokens (Horizon hourly budget)
    Refill Rate: 1 token per second

    Example Usage:
        bucket = TokenBucket()
        if not bucket.consume(correlation_id="abc-123"):
            raise RateLimitError(...)
    """

    DEFAULT_CAPACITY = 3600
    DEFAULT_REFILL_RATE = 1.0

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        refill_rate: float = DEFAULT_REFILL_RATE
    ):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError(
                f"capacity and refill_rate must be positive, "
                f"got: capacity={capacity} refill_rate={refill_rate}"
            )
        self.capacity = capacity
        self.refill_rate = refill_rate

        self._tokens = float(capacity)
        self._last_refill = time.monotonic()

        # Thread safety - MUTEX LOCK
        self._lock = threading.Lock()

        logger.debug(
            f"[REM-RATE] TokenBucket initialized | "
            f"capacity={capacity} | refill_rate={refill_rate}/s"
        )

    def consume(
        self,
        tokens: int = 1,
        correlation_id: Optional[str] = None
    ) -> bool:
        """
        Attempt to consume tokens from bucket (thread-safe).

        Returns:
            True if tokens consumed successfully, False if insufficient
        """
        with self._lock:
            self._refill()

            if self._tokens >= tokens:
                self._tokens -= tokens
                return True

            logger.warning(
                f"[REM-LED-004] Request budget exhausted | "
                f"requested={tokens} | available={self._tokens:.1f} | "
                f"correlation_id={correlation_id}"
            )
            return False

    def _refill(self) -> None:
        """Refill tokens based on elapsed time (called within lock)."""
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def seconds_until_available(self, tokens: int = 1) -> float:
        """Seconds until `tokens` can be consumed at the current refill rate."""
        with self._lock:
            self._refill()
            missing = tokens - self._tokens
            if missing <= 0:
                return 0.0
            return missing / self.refill_rate

    def force_consume(self, tokens: int) -> None:
        """Force consume tokens (for testing rate limit scenarios)."""
        with self._lock:
            self._tokens = max(0.0, self._tokens - tokens)


# ============================================================================
# Exponential Backoff Helper
# ============================================================================

class ExponentialBackoff:
    """
    Exponential Backoff Calculator.

    Used between retry attempts against Horizon. Each call to get_delay()
    returns the next delay and advances the attempt counter.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        jitter: float = 0.25
    ):
        """
        Args:
            base_delay: Initial delay in seconds
            multiplier: Delay multiplier per attempt
            max_delay: Maximum delay cap in seconds
            jitter: Random jitter factor (0-1)
        """
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._attempt = 0

    def get_delay(self) -> float:
        """Get next backoff delay and increment attempt counter."""
        delay = min(self.base_delay * (self.multiplier ** self._attempt), self.max_delay)

        # Jitter
        if self.jitter > 0:
            delay += delay * self.jitter * random.random()

        self._attempt += 1
        return delay

    def reset(self) -> None:
        """Reset attempt counter after successful request."""
        self._attempt = 0
