"""
FIFO queue of acquired balance entries for one (account, asset) pair.

Entries are appended at the tail in non-decreasing ``acquired_at`` order and
consumed from the head, so consumption order equals acquisition order.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Iterator, Optional

from .errors import InvariantViolationError


def is_expired(acquired_at: int, as_at: int, window_duration: int) -> bool:
    """Whether an entry acquired at ``acquired_at`` has left the window at ``as_at``.

    Every expiry check in this module goes through here.
    """
    # An entry exactly ``window_duration`` old is expired. Use ``>`` to keep it valid instead.
    return as_at - acquired_at >= window_duration


@dataclass(frozen=True)
class AcquiredEntry:
    amount: int
    acquired_at: int


class AcquiredQueue:
    """Oldest-first queue of acquired entries backed by a deque."""

    def __init__(self, entries: Optional[list[AcquiredEntry]] = None):
        self._entries: deque[AcquiredEntry] = deque()
        for entry in entries or []:
            self.append(entry.amount, entry.acquired_at)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AcquiredEntry]:
        return iter(self._entries)

    def __repr__(self) -> str:
        inner = ", ".join(f"({e.amount}, t={e.acquired_at})" for e in self._entries)
        return f"AcquiredQueue([{inner}])"

    @property
    def entries(self) -> list[AcquiredEntry]:
        return list(self._entries)

    @property
    def total(self) -> int:
        """Sum of all entries, expired or not."""
        return sum(e.amount for e in self._entries)

    def append(self, amount: int, acquired_at: int) -> None:
        if amount <= 0:
            return
        if self._entries and acquired_at < self._entries[-1].acquired_at:
            # Inherited timestamps can be older than the tail; keep order by
            # inserting before the first strictly newer entry.
            self._insert_ordered(AcquiredEntry(amount, acquired_at))
            return
        self._entries.append(AcquiredEntry(amount, acquired_at))

    def _insert_ordered(self, entry: AcquiredEntry) -> None:
        for index, existing in enumerate(self._entries):
            if existing.acquired_at > entry.acquired_at:
                self._entries.insert(index, entry)
                return
        self._entries.append(entry)

    def consume(
        self,
        amount: int,
        as_at: int,
        window_duration: int,
    ) -> tuple[list[AcquiredEntry], int]:
        """Consume ``amount`` oldest-first as of ``as_at``.

        Entries already expired at ``as_at`` are discarded and not reported.
        Returns the consumed entries (with their original ``acquired_at``) and
        the leftover that could not be covered by acquired balance.
        """
        if amount < 0:
            raise InvariantViolationError(f"Cannot consume a negative amount ({amount})")

        consumed: list[AcquiredEntry] = []
        remaining = amount

        while remaining > 0 and self._entries:
            head = self._entries[0]
            if is_expired(head.acquired_at, as_at, window_duration):
                self._entries.popleft()
                continue
            if head.amount <= remaining:
                consumed.append(head)
                remaining -= head.amount
                self._entries.popleft()
            else:
                consumed.append(AcquiredEntry(remaining, head.acquired_at))
                self._entries[0] = AcquiredEntry(head.amount - remaining, head.acquired_at)
                remaining = 0

        return consumed, remaining

    def prune(self, now: int, window_duration: int) -> None:
        while self._entries and is_expired(self._entries[0].acquired_at, now, window_duration):
            self._entries.popleft()

    def valid_balance(self, now: int, window_duration: int) -> int:
        """Sum of non-expired entries without mutating the queue."""
        return sum(
            e.amount for e in self._entries if not is_expired(e.acquired_at, now, window_duration)
        )

    def prune_and_sum(self, now: int, window_duration: int) -> int:
        self.prune(now, window_duration)
        total = 0
        for entry in self._entries:
            if entry.amount < 0:
                raise InvariantViolationError(
                    f"Negative acquired entry {entry.amount} at t={entry.acquired_at}"
                )
            total += entry.amount
        return total
