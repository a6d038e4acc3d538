"""Token bucket rate limiting for outbound Google API requests.

The Gmail API enforces a per-user quota (250 quota units per second, with
messages.get costing 5 units). The GmailClient consumes one token per HTTP
request from a shared bucket so bursts of message fetches during a sync do
not trip 429 responses.

Standard rate limits by service:
- gmail: 40 requests per second, burst of 40
- google_oauth: 5 requests per second
"""

import threading
import time

from finmail.core.errors import RateLimitExceeded
from finmail.core.logging import get_logger

logger = get_logger(__name__)

# Longest wait the bucket will block for before giving up
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Thread-safe token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If no
    tokens are available, the caller sleeps until one becomes available.

    Example:
        limiter = TokenBucket(rate=1.0, capacity=1)
        limiter.consume_sync()  # Waits if needed
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens in the bucket (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.sync_lock = threading.Lock()

    def consume_sync(self, tokens: int = 1) -> bool:
        """Consume tokens, sleeping until they are available.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If tokens cannot be consumed within MAX_WAIT_SECONDS
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        with self.sync_lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate

            if wait_time > MAX_WAIT_SECONDS:
                logger.warning(
                    "rate_limit_wait_excessive",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")

        # Release lock during sleep
        logger.debug("rate_limit_waiting", wait_time=wait_time)
        time.sleep(wait_time)

        with self.sync_lock:
            self._refill()
            if self.tokens < tokens:
                raise RateLimitExceeded("Failed to get enough tokens even after waiting")
            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


# Shared buckets, one per service
_buckets: dict[str, TokenBucket] = {}
_buckets_lock = threading.Lock()


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create a named token bucket.

    Args:
        name: Bucket name/identifier
        rate: Token refill rate if creating a new bucket
        capacity: Token capacity if creating a new bucket

    Returns:
        TokenBucket instance
    """
    with _buckets_lock:
        if name not in _buckets:
            _buckets[name] = TokenBucket(rate=rate, capacity=capacity)
        return _buckets[name]
