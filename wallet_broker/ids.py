"""
Correlation identifiers.
"""
import time
import uuid


def new_request_id() -> str:
    """Return a fresh request id. Ids are random and never reused."""
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)
