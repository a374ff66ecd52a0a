"""
In-process mutual exclusion per mailbox.

The database advisory lock covers separate processes; this registry keeps
threads of one process (scheduler job and an HTTP-triggered sync) apart
without opening a second connection.
"""

import threading

from order_sync.core.models import MailboxKey

_registry_lock = threading.Lock()
_locks: dict[MailboxKey, threading.Lock] = {}


def mailbox_lock(key: MailboxKey) -> threading.Lock:
    """Return the process-wide lock for a mailbox, creating it on first use."""
    with _registry_lock:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _locks[key] = lock
        return lock
