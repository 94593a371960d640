"""Per-asset mutual exclusion for asset-increment.

This module provides the AssetLockRegistry class that serializes backup
and restore operations per repository path. Waiters are served in arrival
order, so calls for one asset run in the order they were issued. Calls
for different assets never wait on each other.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Sequence, Set, Union
import logging
import threading
import time


logger = logging.getLogger(__name__)

LockKey = Union[str, Path]


class LockError(Exception):
    """Raised when a per-asset lock cannot be acquired in time."""
    pass


@dataclass
class _KeyState:
    """Ticket queue for one key."""
    next_ticket: int = 0
    now_serving: int = 0

    @property
    def idle(self) -> bool:
        return self.next_ticket == self.now_serving


class AssetLockRegistry:
    """
    FIFO ticket locks keyed by repository path.

    A key's state exists only while some caller holds or waits for it;
    the last release removes it.

    Args:
        timeout: Default seconds to wait in acquire() (None = forever)
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._condition = threading.Condition()
        self._states: Dict[str, _KeyState] = {}
        # Tickets whose waiters timed out, skipped when their turn comes
        self._abandoned: Dict[str, Set[int]] = {}

    @staticmethod
    def _normalize(key: LockKey) -> str:
        return str(key)

    def acquire(self, key: LockKey, timeout: Optional[float] = None) -> None:
        """
        Wait for exclusive access to key.

        Raises:
            LockError: If the wait exceeds timeout
        """
        name = self._normalize(key)
        timeout = self.timeout if timeout is None else timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._condition:
            state = self._states.setdefault(name, _KeyState())
            ticket = state.next_ticket
            state.next_ticket += 1

            while state.now_serving != ticket:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    self._abandoned.setdefault(name, set()).add(ticket)
                    raise LockError(f"Timed out after {timeout}s waiting for lock on {name}")
                self._condition.wait(remaining)

            logger.debug(f"Acquired lock on {name} (ticket {ticket})")

    def release(self, key: LockKey) -> None:
        """Hand key to the next waiter, or forget it if nobody waits."""
        name = self._normalize(key)
        with self._condition:
            state = self._states.get(name)
            if state is None or state.idle:
                raise LockError(f"Lock on {name} is not held")

            state.now_serving += 1
            abandoned = self._abandoned.get(name)
            while abandoned and state.now_serving in abandoned:
                abandoned.discard(state.now_serving)
                state.now_serving += 1

            if state.idle:
                del self._states[name]
                self._abandoned.pop(name, None)
            logger.debug(f"Released lock on {name}")
            self._condition.notify_all()

    @contextmanager
    def hold(self, *keys: LockKey, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the locks for all keys for the duration of a with block.

        Keys are taken in sorted order so two callers locking the same pair
        cannot deadlock.
        """
        ordered: Sequence[str] = sorted({self._normalize(k) for k in keys})
        acquired = []
        try:
            for name in ordered:
                self.acquire(name, timeout=timeout)
                acquired.append(name)
            yield
        finally:
            for name in reversed(acquired):
                self.release(name)

    def is_locked(self, key: LockKey) -> bool:
        """True while some caller holds or waits for key."""
        with self._condition:
            state = self._states.get(self._normalize(key))
            return state is not None and not state.idle

    def active_keys(self) -> int:
        with self._condition:
            return len(self._states)
