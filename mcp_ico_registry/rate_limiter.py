"""
Per-Caller Rate Limiting

State-changing requests reaching the registry through the MCP server or the HTTP
action API are limited per caller address, so a single account cannot flood the
chain with listings or purchases. Read-only requests are not limited.

Each caller has a sliding 60-second window holding the timestamps of its accepted
requests; a request is rejected once the window already holds RATE_LIMIT_PER_MINUTE
entries. Callers are kept in LRU order and idle ones are evicted once the table grows
past MAX_TRACKED_CALLERS.
"""
import threading
import time
from collections import OrderedDict, deque
from typing import Deque, Optional

from mcp_ico_registry.config import RATE_LIMIT_PER_MINUTE
from mcp_ico_registry.errors import RateLimitExceededError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60
MAX_TRACKED_CALLERS = 1000

# {caller: timestamps of accepted requests inside the current window}
request_log: "OrderedDict[str, Deque[float]]" = OrderedDict()
_lock = threading.Lock()


def check_rate_limit(caller: str, limit: Optional[int] = None, now: Optional[float] = None) -> bool:
    """
    Records a request from ``caller`` if it is within its limit.

    Args:
        caller: The caller's address.
        limit: Requests allowed per window; defaults to RATE_LIMIT_PER_MINUTE.
        now: Current time; defaults to ``time.time()``.

    Returns:
        True if the request is allowed, False if the rate limit is exceeded.
    """
    now = time.time() if now is None else now
    limit = RATE_LIMIT_PER_MINUTE if limit is None else limit
    with _lock:
        if len(request_log) > MAX_TRACKED_CALLERS:
            cleanup_old_entries(now - WINDOW_SECONDS)

        timestamps = request_log.setdefault(caller, deque())
        while timestamps and timestamps[0] <= now - WINDOW_SECONDS:
            timestamps.popleft()
        request_log.move_to_end(caller)

        if len(timestamps) >= limit:
            logger.warning(f"Rate limit exceeded for caller: {caller}. Count: {len(timestamps)}, Limit: {limit}")
            return False

        timestamps.append(now)
        logger.debug(f"Rate limit check passed for caller: {caller}. Count: {len(timestamps)}")
        return True


def enforce_rate_limit(caller: str) -> None:
    """Like check_rate_limit, but raises RateLimitExceededError instead of returning False."""
    if not check_rate_limit(caller):
        raise RateLimitExceededError(f"Rate limit exceeded for caller: {caller}")


def cleanup_old_entries(cutoff_time: float) -> None:
    """Drops callers whose latest accepted request is older than ``cutoff_time``."""
    stale = [caller for caller, timestamps in request_log.items() if not timestamps or timestamps[-1] < cutoff_time]
    for caller in stale:
        del request_log[caller]

    if stale:
        logger.debug(f"Cleaned up {len(stale)} idle rate limit entries")


def reset(caller: Optional[str] = None) -> None:
    """Forgets one caller's history, or everyone's."""
    with _lock:
        if caller is None:
            request_log.clear()
        else:
            request_log.pop(caller, None)
