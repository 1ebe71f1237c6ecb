"""
Rate-limited external calls.

Every embedding and generative call goes through a RateLimitedCaller:

- TransientProviderError (HTTP 429, 5xx) is retried with exponential
  backoff, base_delay * 2^(attempt-1), for at most max_retries attempts.
- QuotaExhausted fails immediately. Once seen, the rest of the current
  batch is skipped rather than burning more calls.
- Batches are chunked and chunks run under bounded concurrency; results
  are written back by index, never in completion order.
- An optional token bucket smooths the request rate.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import requests

from .errors import QuotaExhausted, SmsLedgerError, TransientProviderError
from .models import Vector

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class TokenBucket:
    """
    Token bucket rate limiter.

    A rate of 0 disables limiting.
    """

    def __init__(self, requests_per_minute: int = 0):
        self.requests_per_minute = requests_per_minute
        self._tokens = float(requests_per_minute)
        self._last_update = time.time()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = time.time()
        elapsed = now - self._last_update
        self._tokens = min(
            float(self.requests_per_minute),
            self._tokens + elapsed * self.requests_per_minute / 60.0,
        )
        self._last_update = now

    def acquire(self, timeout: float = 60.0) -> bool:
        """Block until a token is available. False on timeout."""
        if self.requests_per_minute <= 0:
            return True

        start_time = time.time()
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return True
                wait_time = (1 - self._tokens) * 60.0 / self.requests_per_minute

            if time.time() - start_time + wait_time > timeout:
                logger.warning("Rate limit wait timed out")
                return False
            time.sleep(min(wait_time, 0.5))


class RateLimitedCaller:
    """
    Retry/backoff/quota policy around provider calls.

    Usage:
        caller = RateLimitedCaller(max_retries=3, base_delay=2.0)
        text = caller.call(generator.generate, prompt)
        vectors = caller.map_chunks(texts, provider.embed_batch, chunk_size=100, concurrency=10)
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        requests_per_minute: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.bucket = TokenBucket(requests_per_minute)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stats = {"calls": 0, "retries": 0, "rate_limited": 0, "quota_exhausted": 0, "failures": 0}

    @classmethod
    def from_config(cls, config: Optional[Dict] = None) -> "RateLimitedCaller":
        config = config or {}
        return cls(
            max_retries=config.get("max_retries", 3),
            base_delay=config.get("base_delay", 2.0),
            requests_per_minute=config.get("requests_per_minute", 0),
        )

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before the next attempt (attempt is 1-based)."""
        if retry_after:
            return retry_after
        return self.base_delay * (2 ** (attempt - 1))

    def call(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """
        Call fn with retry on TransientProviderError.

        Raises:
            QuotaExhausted: immediately, never retried
            TransientProviderError: after max_retries attempts
        """
        last_error: Optional[TransientProviderError] = None
        for attempt in range(1, self.max_retries + 1):
            self.bucket.acquire()
            self._count("calls")
            try:
                return fn(*args, **kwargs)
            except QuotaExhausted:
                self._count("quota_exhausted")
                logger.error("Provider quota exhausted, not retrying")
                raise
            except TransientProviderError as e:
                last_error = e
                self._count("rate_limited")
                if attempt >= self.max_retries:
                    break
                delay = self.backoff_delay(attempt, e.retry_after)
                self._count("retries")
                logger.warning(
                    f"Transient provider error (status={e.status_code}), "
                    f"retry {attempt}/{self.max_retries - 1} in {delay:.1f}s"
                )
                self._sleep(delay)

        logger.error(f"Retries exhausted after {self.max_retries} attempts: {last_error}")
        raise last_error

    def map_chunks(
        self,
        items: Sequence[T],
        fn: Callable[[List[T]], List[Optional[R]]],
        chunk_size: int = 100,
        concurrency: int = 10,
    ) -> List[Optional[R]]:
        """
        Apply a batch function chunk by chunk under bounded concurrency.

        The result has the same length and order as `items`. A failed chunk
        yields None for each of its items; a quota error skips every chunk
        that has not started yet.
        """
        if not items:
            return []

        chunk_size = max(1, chunk_size)
        chunks = [list(items[i:i + chunk_size]) for i in range(0, len(items), chunk_size)]
        results: List[Optional[R]] = [None] * len(items)
        quota_hit = threading.Event()

        def run_chunk(index: int) -> None:
            if quota_hit.is_set():
                return
            chunk = chunks[index]
            try:
                values = self.call(fn, chunk)
            except QuotaExhausted:
                quota_hit.set()
                return
            except (SmsLedgerError, requests.exceptions.RequestException) as e:
                self._count("failures")
                logger.warning(f"Chunk {index + 1}/{len(chunks)} failed: {type(e).__name__}: {e}")
                return
            except Exception as e:
                self._count("failures")
                logger.error(f"Chunk {index + 1}/{len(chunks)} raised unexpectedly: {e}", exc_info=True)
                return

            if values is None or len(values) != len(chunk):
                logger.warning(
                    f"Chunk {index + 1}/{len(chunks)} returned {0 if values is None else len(values)} "
                    f"results for {len(chunk)} inputs"
                )
                return
            offset = index * chunk_size
            for j, value in enumerate(values):
                results[offset + j] = value

        if len(chunks) == 1:
            run_chunk(0)
        else:
            with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(chunks)))) as pool:
                list(pool.map(run_chunk, range(len(chunks))))

        if quota_hit.is_set():
            logger.error(f"Quota exhausted; {len(items)} items degraded to no result")
            return [None] * len(items)
        return results

    def get_stats(self) -> Dict:
        with self._lock:
            return dict(self._stats)


class RateLimitedEmbedder:
    """
    Embedding front-end with the batch contract: same length and order as
    the input, None for any item that could not be embedded, never raises.
    """

    def __init__(
        self,
        provider,
        caller: Optional[RateLimitedCaller] = None,
        chunk_size: int = 100,
        concurrency: int = 10,
    ):
        self.provider = provider
        self.caller = caller or RateLimitedCaller()
        self.chunk_size = chunk_size
        self.concurrency = concurrency

    def embed(self, text: str) -> Optional[Vector]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[Optional[Vector]]:
        vectors = self.caller.map_chunks(
            list(texts), self.provider.embed_batch, self.chunk_size, self.concurrency
        )
        # Empty vectors are as good as none
        return [v if v else None for v in vectors]

