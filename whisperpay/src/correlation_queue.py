"""
Correlation Queue

Carries job creators from the JobCreated handler (after their router transfer
is submitted) to the FundsArrived handler, whose events carry no creator.
"""

import logging
import threading
import uuid
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Deque, Optional

from whisperpay.src.chain_identity import normalize_address
from whisperpay.src.models import CorrelationEntry

if TYPE_CHECKING:
    from whisperpay.src.ledger import Ledger

logger = logging.getLogger(__name__)


class DequeuePolicy(str, Enum):
    FIFO = "fifo"  # first job created settles first
    LIFO = "lifo"  # last job created settles first


class CorrelationQueue:
    """
    Ordered store of creators awaiting settlement

    Entries are appended on enqueue; dequeue takes from the front (FIFO) or
    the back (LIFO) according to the configured policy, never a mix. Every
    mutation holds one lock because both event handlers touch the queue.

    With a ledger, each entry is mirrored as an awaiting-funds record and the
    queue is rebuilt from those records on construction. Without one, entries
    live only in this process and are lost on restart.
    """

    def __init__(
        self,
        policy: DequeuePolicy = DequeuePolicy.FIFO,
        ledger: Optional["Ledger"] = None,
    ):
        self.policy = DequeuePolicy(policy)
        self.ledger = ledger
        self._lock = threading.Lock()
        self._entries: Deque[CorrelationEntry] = deque()

        if ledger is not None:
            restored = ledger.awaiting_funds()
            self._entries.extend(restored)
            if restored:
                logger.info(
                    f"Restored {len(restored)} creator(s) awaiting funds | policy={self.policy.value}"
                )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def enqueue(self, creator: str) -> CorrelationEntry:
        entry = CorrelationEntry(entry_id=uuid.uuid4().hex, creator=normalize_address(creator))
        with self._lock:
            if self.ledger is not None:
                self.ledger.add_awaiting_funds(entry)
            self._entries.append(entry)
        return entry

    def dequeue(self) -> Optional[str]:
        """Take the next creator per policy, or None (without side effects) when empty."""
        with self._lock:
            if not self._entries:
                return None
            if self.policy is DequeuePolicy.FIFO:
                entry = self._entries.popleft()
            else:
                entry = self._entries.pop()
            if self.ledger is not None:
                self.ledger.remove_awaiting_funds(entry.entry_id)
            return entry.creator

    def snapshot(self) -> list:
        with self._lock:
            return [entry.creator for entry in self._entries]
