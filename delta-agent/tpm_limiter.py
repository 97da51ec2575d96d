"""
Tokens-per-minute admission control for the completion service.

The provider enforces a TPM quota, so before each request the agent asks the
limiter how long to hold off:

    limiter = RateLimiter(max_tokens_per_minute=20000, min_interval=1.0)
    limiter.wait_if_needed()          # blocks if we are over budget
    reply = llm.chat(messages)
    limiter.record_usage(estimator.estimate(prompt) + estimator.estimate(reply))

Usage is kept as (timestamp, tokens) samples over a trailing 60 second
window. Samples are evicted lazily whenever the window is read or written.
Every operation takes an optional `now` so callers and tests can drive the
clock explicitly; otherwise the injected clock (time.monotonic) is used.
"""

import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Tuple

WINDOW_SECONDS = 60.0

# Added to a window wait so the oldest sample is strictly out of the window
# by the time the caller wakes up.
SAFETY_MARGIN_SECONDS = 0.1


class TokenEstimator:
    """
    Approximate token counts for prompt/response text.

    Without a tokenizer, uses roughly four characters per token, but never
    fewer tokens than there are whitespace-separated words. With a Hugging
    Face tokenizer (the local backend has one), counts exactly.
    """

    def __init__(self, tokenizer: Optional[Any] = None):
        self.tokenizer = tokenizer

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        if self.tokenizer is not None:
            return len(self.tokenizer.encode(text, add_special_tokens=False))
        return max(len(text) // 4, len(text.split()))


def estimate_tokens(text: str) -> int:
    return TokenEstimator().estimate(text)


@dataclass
class LimiterSnapshot:
    current_usage: int
    lifetime_usage: int
    max_tokens_per_minute: int
    min_interval: float
    window_entries: int


class RateLimiter:
    """
    Sliding 60s token window plus a minimum spacing between requests.

    One instance per session. A lock guards the window so the instance can
    be shared with a UI thread reading stats, but the design assumes a
    single request in flight.
    """

    def __init__(
        self,
        max_tokens_per_minute: int,
        min_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        verbose: bool = False,
    ):
        if max_tokens_per_minute <= 0:
            raise ValueError(f"max_tokens_per_minute must be positive, got {max_tokens_per_minute}")
        if min_interval < 0:
            raise ValueError(f"min_interval cannot be negative, got {min_interval}")

        self.max_tokens_per_minute = max_tokens_per_minute
        self.min_interval = float(min_interval)
        self.clock = clock
        self.sleep = sleep
        self.verbose = verbose

        self._window: Deque[Tuple[float, int]] = deque()
        self._last_request_at: Optional[float] = None
        self._total_tokens_used = 0
        self._lock = threading.Lock()

    def _now(self, now: Optional[float]) -> float:
        return self.clock() if now is None else now

    def _prune(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def _usage_at(self, at: float) -> Tuple[int, Optional[float]]:
        # Sum and oldest timestamp of samples still inside the window at `at`,
        # without evicting anything.
        cutoff = at - WINDOW_SECONDS
        total = 0
        oldest = None
        for ts, tokens in self._window:
            if ts < cutoff:
                continue
            if oldest is None:
                oldest = ts
            total += tokens
        return total, oldest

    def record_usage(self, tokens: int, now: Optional[float] = None) -> None:
        if tokens < 0:
            raise ValueError(f"token count cannot be negative, got {tokens}")
        with self._lock:
            now = self._now(now)
            self._window.append((now, tokens))
            self._total_tokens_used += tokens
            self._prune(now)

    def refine_last_usage(self, actual_tokens: int) -> None:
        """
        Replace the newest sample's estimate with the provider's actual count.

        The sample keeps its timestamp. The lifetime counter only ever moves
        up, so an actual count below the estimate leaves it unchanged.
        """
        if actual_tokens < 0:
            raise ValueError(f"token count cannot be negative, got {actual_tokens}")
        with self._lock:
            if not self._window:
                return
            ts, estimated = self._window[-1]
            self._window[-1] = (ts, actual_tokens)
            if actual_tokens > estimated:
                self._total_tokens_used += actual_tokens - estimated

    def admit(self, now: Optional[float] = None) -> float:
        """
        Return how many seconds the caller must wait before sending a request.

        The minimum-interval deficit is owed first. The window is then checked
        at the moment that deficit is paid off: if it is still at or above the
        budget, the caller must also wait until the oldest surviving sample
        ages out (plus a small margin). The two waits run back to back, so
        the result is the later of the two deadlines, measured from `now`.

        Always records `now` as the last admission time.
        """
        with self._lock:
            now = self._now(now)
            self._prune(now)

            interval_wait = 0.0
            if self._last_request_at is not None:
                elapsed = now - self._last_request_at
                if elapsed < self.min_interval:
                    interval_wait = self.min_interval - elapsed

            wait = interval_wait
            usage, oldest = self._usage_at(now + interval_wait)
            if usage >= self.max_tokens_per_minute and oldest is not None:
                window_wait = oldest + WINDOW_SECONDS + SAFETY_MARGIN_SECONDS - now
                wait = max(interval_wait, window_wait)

            self._last_request_at = now
            return max(wait, 0.0)

    def wait_if_needed(self, now: Optional[float] = None) -> float:
        """Block for whatever admit() asks for and return the time spent."""
        wait = self.admit(now)
        if wait > 0:
            if self.verbose:
                print(
                    f"[LIMITER] waiting {wait:.1f}s "
                    f"(window {self.current_usage()}/{self.max_tokens_per_minute} tokens)",
                    file=sys.stderr,
                )
                sys.stderr.flush()
            self.sleep(wait)
        return wait

    def current_usage(self, now: Optional[float] = None) -> int:
        with self._lock:
            now = self._now(now)
            self._prune(now)
            return sum(tokens for _, tokens in self._window)

    def lifetime_usage(self) -> int:
        return self._total_tokens_used

    @property
    def last_request_at(self) -> Optional[float]:
        return self._last_request_at

    def snapshot(self, now: Optional[float] = None) -> LimiterSnapshot:
        usage = self.current_usage(now)
        return LimiterSnapshot(
            current_usage=usage,
            lifetime_usage=self.lifetime_usage(),
            max_tokens_per_minute=self.max_tokens_per_minute,
            min_interval=self.min_interval,
            window_entries=len(self._window),
        )

    def stats(self, now: Optional[float] = None) -> Dict[str, Any]:
        snap = self.snapshot(now)
        return {
            "current_tpm": snap.current_usage,
            "max_tpm": snap.max_tokens_per_minute,
            "total_tokens": snap.lifetime_usage,
            "tpm_usage_percent": (snap.current_usage / snap.max_tokens_per_minute) * 100,
        }
