from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = RLock()
        self.holders = 0


class AccountLockRegistry:
    """
    In-process exclusive section per account id.

    Accounts never share a lock. Entries are dropped once no thread holds or
    waits on them, so the registry does not grow with the account count.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(self, account_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(account_id)
            if entry is None:
                entry = self._entries[account_id] = _Entry()
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(account_id, None)

    def active_count(self) -> int:
        with self._guard:
            return len(self._entries)
