"""
Per-endpoint rate-limit tracker driven by X API response headers.

The tracker never talks to the network. The gateway hands it the headers of
every completed call (and explicit 429 rejections) and asks it, before each
call, whether an endpoint is currently exhausted.

Window lifecycle per endpoint:
    no window -> active (remaining > 0) -> exhausted (waiting for reset)
    -> expired (discarded, back to no window)
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = 60
MAX_BACKOFF_SECONDS = 900  # 15 minutes
RETRY_BUFFER_SECONDS = 5
LOW_WATER_MARK = 5


@dataclass
class RateWindow:
    """Quota window for one endpoint."""
    endpoint: str
    remaining: int
    reset_at: float  # epoch seconds
    limit: Optional[int] = None
    retry_after: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.reset_at

    def is_exhausted(self) -> bool:
        return self.remaining <= 0


def _parse_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed rate limit header value: {value!r}")
        return None


def format_wait(seconds: float) -> str:
    """Human-readable remaining-time message for a rate-limited caller."""
    if seconds <= 0:
        return "API is available"
    if seconds < 60:
        return f"Rate limited. Retry in {math.ceil(seconds)} seconds."
    minutes = math.ceil(seconds / 60)
    if minutes == 1:
        return "Rate limited. Retry in 1 minute."
    return f"Rate limited. Retry in {minutes} minutes."


class RateTracker:
    """
    Tracks X API quota windows per endpoint.

    Features:
    - Windows built from x-rate-limit-* headers, overwritten on every response
    - Synthesized windows for explicit 429 rejections (bounded backoff)
    - Expired windows are discarded, never decremented
    - Thread-safe; one lock guards all read-modify-write sequences
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        default_backoff: float = DEFAULT_BACKOFF_SECONDS,
        max_backoff: float = MAX_BACKOFF_SECONDS,
        retry_buffer: float = RETRY_BUFFER_SECONDS,
        low_water_mark: int = LOW_WATER_MARK,
    ):
        self._clock = clock
        self.default_backoff = default_backoff
        self.max_backoff = max_backoff
        self.retry_buffer = retry_buffer
        self.low_water_mark = low_water_mark

        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.RLock()

    def now(self) -> float:
        return self._clock()

    def _live_window(self, endpoint: str) -> Optional[RateWindow]:
        """Return the window for endpoint, discarding it if expired. Caller holds the lock."""
        window = self._windows.get(endpoint)
        if window is None:
            return None
        if window.is_expired(self.now()):
            del self._windows[endpoint]
            logger.debug(f"Rate window for {endpoint} expired and was discarded")
            return None
        return window

    def get_window(self, endpoint: str) -> Optional[RateWindow]:
        with self._lock:
            return self._live_window(endpoint)

    def is_limited(self, endpoint: str) -> bool:
        """True iff a live window exists for endpoint and it has no calls left."""
        with self._lock:
            window = self._live_window(endpoint)
            return window is not None and window.is_exhausted()

    def record_from_response(self, endpoint: str, headers: Mapping[str, Any]) -> Optional[RateWindow]:
        """
        Update the window for endpoint from a completed call's headers.

        Both x-rate-limit-remaining and x-rate-limit-reset must be present;
        otherwise the prior window is left untouched.

        Returns:
            The new window, or None if the headers carried no usable signal
        """
        normalized = {str(k).lower(): v for k, v in (headers or {}).items()}

        remaining = _parse_int(normalized.get("x-rate-limit-remaining"))
        reset = _parse_int(normalized.get("x-rate-limit-reset"))
        if remaining is None or reset is None:
            return None

        limit = _parse_int(normalized.get("x-rate-limit-limit"))
        retry_after = _parse_int(normalized.get("retry-after"))

        window = RateWindow(
            endpoint=endpoint,
            remaining=remaining,
            reset_at=float(reset),
            limit=limit,
            retry_after=float(retry_after) if retry_after is not None else None,
        )

        with self._lock:
            self._windows[endpoint] = window

        if remaining < self.low_water_mark:
            logger.warning(f"X API rate limit warning for {endpoint}: {remaining} requests remaining")
        else:
            logger.debug(f"Rate window for {endpoint}: {remaining} remaining until {reset}")

        return window

    def record_hard_limit_error(self, endpoint: str, retry_after_seconds: Optional[float] = None) -> RateWindow:
        """
        Record an explicit over-quota rejection (HTTP 429).

        The synthesized window resets after max(retry_after, default_backoff),
        capped at max_backoff so a bogus header cannot stall callers forever.
        """
        delay = max(retry_after_seconds or 0, self.default_backoff)
        delay = min(delay, self.max_backoff)

        with self._lock:
            previous = self._windows.get(endpoint)
            window = RateWindow(
                endpoint=endpoint,
                remaining=0,
                reset_at=self.now() + delay,
                limit=previous.limit if previous else None,
                retry_after=delay,
            )
            self._windows[endpoint] = window

        logger.warning(f"X API rejected {endpoint} as over quota; backing off {delay:.0f}s")
        return window

    def retry_delay(self, endpoint: str) -> float:
        """Seconds until endpoint may be called again (plus buffer), 0 if not limited."""
        with self._lock:
            window = self._live_window(endpoint)
            if window is None or not window.is_exhausted():
                return 0.0
            until_reset = window.reset_at - self.now()
            return min(until_reset + self.retry_buffer, self.max_backoff)

    def rate_limit_message(self, endpoint: str) -> str:
        with self._lock:
            window = self._live_window(endpoint)
            if window is None:
                return "API is available"
            if not window.is_exhausted():
                return f"API available: {window.remaining} requests remaining"
            return format_wait(self.retry_delay(endpoint))

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every live window, keyed by endpoint."""
        with self._lock:
            for endpoint in list(self._windows):
                self._live_window(endpoint)

            status = {}
            for endpoint, window in self._windows.items():
                reset_dt = datetime.fromtimestamp(window.reset_at, tz=timezone.utc)
                status[endpoint] = {
                    "remaining": window.remaining,
                    "limit": window.limit,
                    "reset_at": reset_dt.isoformat(),
                    "reset_time_str": reset_dt.strftime("%H:%M:%S UTC"),
                    "seconds_until_reset": max(0, int(window.reset_at - self.now())),
                    "limited": window.is_exhausted(),
                    "retry_delay": self.retry_delay(endpoint),
                    "message": self.rate_limit_message(endpoint),
                }
            return status

    def clear(self, endpoint: str) -> bool:
        with self._lock:
            removed = self._windows.pop(endpoint, None) is not None
        if removed:
            logger.info(f"Cleared rate window for {endpoint}")
        return removed

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._windows)
            self._windows.clear()
        logger.info(f"Cleared {count} rate windows")
        return count


__all__ = [
    "RateWindow",
    "RateTracker",
    "format_wait",
    "DEFAULT_BACKOFF_SECONDS",
    "MAX_BACKOFF_SECONDS",
    "RETRY_BUFFER_SECONDS",
    "LOW_WATER_MARK",
]
