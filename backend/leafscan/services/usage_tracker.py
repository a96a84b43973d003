"""
LeafScan Backend — Usage Tracker (per-client rate limiting)
=============================================================

What:  Per-client fixed window counter gating POST /analyze.
Why:   Every admitted request costs a paid Gemini call; the limit caps what
       one client can spend.
How:   One ClientUsageRecord per client key, created lazily. A lock
       serializes check-and-update so two concurrent requests from the same
       client can never both pass the limit.
Who:   Owned by DiagnosisService; constructed once per app in create_app().
When:  First step of every analyze request, before the body is read.

Why not a middleware returning 429:
    Throttling is a normal outcome the UI shows as a notice, so it is an
    HTTP 200 with `rateLimited: true`. The route needs the decision, not a
    short-circuited response.

Algorithm: Fixed Window Counter
    1. No record, or the record's window has elapsed (now - window_start > W)
       → reset to count=1, window_start=now, allow
    2. count < N → increment, allow
    3. otherwise → deny with an advisory message

    A fixed window can admit up to 2N requests in just under 2W seconds when
    a burst straddles a window boundary. This is accepted: the limit exists
    to cap inference spend per client, not to shape traffic precisely.

    The counter is spent when the request is admitted and never refunded,
    even if the image later fails to decode.

Memory:
    Records whose window has elapsed carry no information (the next check
    would reset them anyway), so every `sweep_interval` checks the tracker
    drops them. Throttling behavior is identical with or without the sweep.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

DEFAULT_DENIED_MESSAGE = (
    "Has alcanzado el límite de análisis por minuto. "
    "Espera un momento antes de enviar otra foto."
)


@dataclass
class ClientUsageRecord:
    """Mutable counter for one client key. Only UsageTracker touches it."""

    client_key: str
    count: int
    window_start: float


@dataclass(frozen=True)
class UsageDecision:
    """
    Outcome of UsageTracker.check().

    Attributes:
        allowed:     True if the request may proceed
        remaining:   Requests left in the current window after this one
        retry_after: Seconds until the window resets (0 when allowed)
        message:     Advisory text for the client (None when allowed)
    """

    allowed: bool
    remaining: int
    retry_after: int = 0
    message: Optional[str] = None


class UsageTracker:
    """
    Thread-safe fixed window rate limiter keyed by client.

    Args:
        max_requests:   N, requests allowed per window
        window_seconds: W, window length in seconds
        clock:          Monotonic time source; tests pass a fake
        sweep_interval: Sweep expired records every this many checks
    """

    def __init__(
        self,
        max_requests: int = 2,
        window_seconds: float = 60,
        clock: Optional[Clock] = None,
        sweep_interval: int = 256,
        denied_message: str = DEFAULT_DENIED_MESSAGE,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.sweep_interval = max(1, sweep_interval)
        self.denied_message = denied_message
        self._clock = clock or time.monotonic
        self._records: Dict[str, ClientUsageRecord] = {}
        self._lock = threading.Lock()
        self._checks = 0

    def check(self, client_key: str) -> UsageDecision:
        """
        Count one request for `client_key` and decide whether it may proceed.

        Returns:
            UsageDecision with allowed=True, or allowed=False plus message
            and retry_after.
        """
        with self._lock:
            now = self._clock()
            self._checks += 1
            if self._checks % self.sweep_interval == 0:
                self._sweep(now)

            record = self._records.get(client_key)
            if record is None or self._expired(record, now):
                self._records[client_key] = ClientUsageRecord(
                    client_key=client_key, count=1, window_start=now
                )
                return UsageDecision(allowed=True, remaining=self.max_requests - 1)

            if record.count < self.max_requests:
                record.count += 1
                return UsageDecision(
                    allowed=True, remaining=self.max_requests - record.count
                )

            retry_after = int(record.window_start + self.window_seconds - now) + 1
            logger.warning(
                "Usage limit reached for client %s: %d requests in %ss window",
                client_key,
                record.count,
                self.window_seconds,
            )
            return UsageDecision(
                allowed=False,
                remaining=0,
                retry_after=max(retry_after, 1),
                message=self.denied_message,
            )

    def reset(self, client_key: str) -> None:
        """Forget the record for `client_key`."""
        with self._lock:
            self._records.pop(client_key, None)

    def get_record(self, client_key: str) -> Optional[ClientUsageRecord]:
        """Snapshot of the current record (a copy, safe to inspect)."""
        with self._lock:
            record = self._records.get(client_key)
            if record is None:
                return None
            return ClientUsageRecord(record.client_key, record.count, record.window_start)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _expired(self, record: ClientUsageRecord, now: float) -> bool:
        return now - record.window_start > self.window_seconds

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        stale = [key for key, rec in self._records.items() if self._expired(rec, now)]
        for key in stale:
            del self._records[key]
        if stale:
            logger.debug("Swept %d expired usage records", len(stale))
