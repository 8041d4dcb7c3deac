from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator


@dataclass
class _KeyedLockEntry:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class KeyedLocks:
    """Per-key mutual exclusion.

    Entries are created on first use and dropped as soon as nobody holds or
    waits on them, so the map only ever contains keys with work in flight.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, _KeyedLockEntry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _KeyedLockEntry()
                self._entries[key] = entry
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._lock:
                entry.holders -= 1
                if entry.holders <= 0 and self._entries.get(key) is entry:
                    del self._entries[key]

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
