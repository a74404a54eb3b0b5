from __future__ import annotations

import contextlib
import threading
import weakref
from typing import Iterator


class NoteLockRegistry:
    """
    One threading.Lock per note id, shared by every component that mutates notes.

    Entries are weak: a lock lives only while some caller holds or waits on it,
    so ids that were never found (or were deleted) leave nothing behind.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, note_id: str) -> threading.Lock:
        with self._guard:
            lk = self._locks.get(note_id)
            if lk is None:
                lk = threading.Lock()
                self._locks[note_id] = lk
            return lk

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextlib.contextmanager
    def hold(self, note_id: str) -> Iterator[None]:
        lk = self.lock_for(str(note_id))
        with lk:
            yield
