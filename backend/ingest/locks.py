"""
Named Locks and Cancellation Flags

Per-account serialization for token refresh and batch runs.
Uses Redis locks so Celery workers and web processes share the same lock;
LOCK_BACKEND=local keeps locks in-process for single-process deployments and tests.
"""

import os
import threading
from contextlib import contextmanager

import redis
from dotenv import load_dotenv

load_dotenv(override=False)

LOCK_BACKEND = os.getenv("LOCK_BACKEND", "redis").lower()

_redis_client = None

_local_guard = threading.Lock()
_local_locks: dict[str, threading.Lock] = {}
_local_flags: set[str] = set()


def get_redis_client():
    """Get or create Redis client for locking."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
        _redis_client = redis.from_url(redis_url)
    return _redis_client


class _LocalLock:
    """In-process lock with the redis-py Lock acquire/release signature."""

    def __init__(self, name: str):
        with _local_guard:
            self._lock = _local_locks.setdefault(name, threading.Lock())

    def acquire(self, blocking: bool = True, blocking_timeout: float = None) -> bool:
        if not blocking:
            return self._lock.acquire(blocking=False)
        timeout = -1 if blocking_timeout is None else blocking_timeout
        return self._lock.acquire(timeout=timeout)

    def release(self) -> None:
        self._lock.release()

    def reacquire(self) -> bool:
        # In-process locks never expire
        return True


def make_lock(name: str, timeout: int = 30):
    """Create a named lock object for the configured backend."""
    if LOCK_BACKEND == "local":
        return _LocalLock(name)
    return get_redis_client().lock(name, timeout=timeout)


@contextmanager
def named_lock(
    name: str, timeout: int = 30, blocking: bool = True, blocking_timeout: float = 35
):
    """
    Hold a named lock for the duration of the block.

    Yields:
        The held lock if it was acquired, None otherwise (caller decides what to do)
    """
    lock = make_lock(name, timeout=timeout)
    acquired = lock.acquire(blocking=blocking, blocking_timeout=blocking_timeout)
    try:
        yield lock if acquired else None
    finally:
        if acquired:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # Lock expired (timeout elapsed) before release
                pass


def renew_lock(lock) -> bool:
    """Reset a held lock's expiry to its full timeout. False if it was already lost."""
    try:
        lock.reacquire()
    except redis.exceptions.LockError:
        return False
    return True


def token_refresh_lock_name(account_id: int) -> str:
    return f"gmail_token_refresh:{account_id}"


def batch_lock_name(account_id: int) -> str:
    return f"mail_batch:{account_id}"


def _cancel_key(account_id: int) -> str:
    return f"mail_batch_cancel:{account_id}"


def request_cancel(account_id: int) -> None:
    """Ask the running batch for this account to stop at the next page/item."""
    if LOCK_BACKEND == "local":
        with _local_guard:
            _local_flags.add(_cancel_key(account_id))
        return
    get_redis_client().set(_cancel_key(account_id), "1", ex=3600)


def clear_cancel(account_id: int) -> None:
    if LOCK_BACKEND == "local":
        with _local_guard:
            _local_flags.discard(_cancel_key(account_id))
        return
    get_redis_client().delete(_cancel_key(account_id))


def is_cancel_requested(account_id: int) -> bool:
    if LOCK_BACKEND == "local":
        return _cancel_key(account_id) in _local_flags
    return bool(get_redis_client().exists(_cancel_key(account_id)))
