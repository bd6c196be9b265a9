"""
In-memory rate limiter for manual "check now" requests.

Tracks the last time a manual monitoring check was allowed per
(user, domain) using a plain dict guarded by a lock.  Scheduled runs are
not rate-limited.

The store is per process.  When the application runs several worker
processes each keeps its own window; the public interface stays the same
if it is ever moved to a shared store.

Usage:
    from spfwatch.utils.rate_limit import is_rate_limited

    if is_rate_limited(user_id, domain, window_seconds):
        return jsonify({"error": "..."}), 429
"""

from __future__ import annotations

import logging
import threading
import time

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

# Keys are (user_id, domain) tuples; values are the monotonic timestamp of
# the last allowed request.
_last_check_times: dict[tuple[str, str], float] = {}
_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Public interface
# ---------------------------------------------------------------------------


def is_rate_limited(user_id: str, domain: str, window_seconds: float = 60) -> bool:
    """Return True if the caller should be rate-limited (i.e. too soon).

    When the caller is *not* rate-limited this function also records the
    current time as the new "last allowed" timestamp.

    Args:
        user_id:        Owner of the monitored domain.
        domain:         The domain being checked.
        window_seconds: Minimum seconds between two allowed checks.

    Returns:
        True  - the last check was within the window; block it.
        False - enough time has passed; the check is allowed.
    """
    key = (user_id, domain)
    now = time.monotonic()

    with _lock:
        last = _last_check_times.get(key)
        if last is not None:
            elapsed = now - last
            if elapsed < window_seconds:
                logger.warning(
                    "Rate limit active: user=%r domain=%r elapsed=%.1fs remaining=%ds",
                    user_id,
                    domain,
                    elapsed,
                    int(window_seconds - elapsed),
                )
                return True

        # Allow - update the stored timestamp.
        _last_check_times[key] = now
        return False


def clear_all_rate_limits() -> None:
    """Remove all rate-limit records (test isolation)."""
    with _lock:
        _last_check_times.clear()
