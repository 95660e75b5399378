"""
approval_kernel.services.locks -- Per-approval mutual exclusion.

Responsibility:
    Serialize every operation that mutates one approval request
    (act, delegate, escalate, handle_timeout, expire) inside this process.
    Cross-process safety comes from the store's compare-and-swap on
    ``ApprovalRequest.version``.

Invariants enforced:
    - One ``threading.Lock`` per approval id while anyone holds or waits
      for it; the entry is dropped when the last holder releases, so the
      registry does not grow with the number of approvals ever seen.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from uuid import UUID


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0


class ApprovalLockRegistry:
    """Reference-counted registry of per-approval locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[UUID, _Entry] = {}

    @contextmanager
    def hold(self, approval_id: UUID) -> Iterator[None]:
        """Hold the lock for ``approval_id`` for the duration of the block."""
        with self._guard:
            entry = self._entries.get(approval_id)
            if entry is None:
                entry = self._entries[approval_id] = _Entry()
            entry.refs += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[approval_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def is_held(self, approval_id: UUID) -> bool:
        with self._guard:
            entry = self._entries.get(approval_id)
            return entry is not None and entry.lock.locked()
