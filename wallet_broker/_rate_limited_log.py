"""
Rate-limited logging for messages that repeat per caller.

A misbehaving page can hit a denied channel in a tight loop; these helpers keep
one line per distinct message per window instead of flooding the log.
"""
import logging
import threading
from typing import Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60

_seen_cache: TTLCache = TTLCache(maxsize=512, ttl=DEFAULT_INTERVAL)
_seen_cache_lock = threading.RLock()


def rate_limited_log(
    message: str,
    level: str = "warning",
    logger_instance: Optional[logging.Logger] = None,
) -> bool:
    """
    Log a message unless the same message was logged within the TTL window.

    Args:
        message: Message to log
        level: Log level name (debug, info, warning, error, critical)
        logger_instance: Logger to use (defaults to module logger)

    Returns:
        True if the message was emitted, False if it was suppressed
    """
    log_instance = logger_instance or logger
    log_method = getattr(log_instance, level.lower(), log_instance.warning)
    key = f"{level}:{message}"

    with _seen_cache_lock:
        if key in _seen_cache:
            return False
        _seen_cache[key] = True

    log_method(message)
    return True


def reset_rate_limits() -> None:
    """Forget every suppressed message."""
    with _seen_cache_lock:
        _seen_cache.clear()
