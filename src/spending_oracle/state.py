"""
Sub-account state reconstruction.

``build_state`` is a pure replay: it merges and deduplicates the account's
events, orders them chronologically, replays them against fresh FIFO queues
and a fresh deposit ledger, and returns the final spend-in-window and
acquired balances. Nothing is carried over between invocations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from .deposits import DepositLedger, DepositRecord
from .errors import InvariantViolationError
from .events import Event, Operation, OperationType, Transfer, sort_key
from .fifo import AcquiredEntry, AcquiredQueue

logger = logging.getLogger(__name__)


class ClaimPolicy(str, Enum):
    """How claim outputs earn acquired status.

    DEPOSIT_MATCH: only the portion matched against outstanding deposits at
        the same target in the same token (the withdraw rule).
    POSITION: as DEPOSIT_MATCH, plus any unmatched remainder when the account
        holds a deposit at the claim target.
    """

    DEPOSIT_MATCH = "deposit-match"
    POSITION = "position"


@dataclass
class SubAccountState:
    """Replay result for one account at one instant."""

    account: str
    now: int
    window_duration: int
    spending_in_window: int = 0
    deposit_records: list[DepositRecord] = field(default_factory=list)
    acquired_queues: dict[str, AcquiredQueue] = field(default_factory=dict)
    acquired_balances: dict[str, int] = field(default_factory=dict)
    events_replayed: int = 0

    @property
    def window_start(self) -> int:
        return self.now - self.window_duration

    def to_dict(self) -> dict:
        return {
            "account": self.account,
            "now": self.now,
            "window_duration": self.window_duration,
            "spending_in_window": str(self.spending_in_window),
            "acquired_balances": {k: str(v) for k, v in sorted(self.acquired_balances.items())},
            "deposit_records": [r.to_dict() for r in self.deposit_records],
            "events_replayed": self.events_replayed,
        }


def merge_events(
    historical: Iterable[Event],
    new_events: Iterable[Event] = (),
    account: Optional[str] = None,
) -> list[Event]:
    """Combine, deduplicate by order key and sort for replay.

    The first occurrence of an order key wins. When ``account`` is given,
    events belonging to other accounts are dropped.
    """
    seen: set[tuple[int, int]] = set()
    merged: list[Event] = []
    dropped_foreign = 0
    duplicates = 0

    for event in list(historical) + list(new_events):
        if account is not None and event.account != account:
            dropped_foreign += 1
            continue
        key = (event.order_key.block_number, event.order_key.log_index)
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        merged.append(event)

    if duplicates or dropped_foreign:
        logger.debug(
            "Merged %d events (%d duplicates, %d foreign dropped)",
            len(merged), duplicates, dropped_foreign,
        )
    merged.sort(key=sort_key)
    return merged


class StateBuilder:
    """Replays an ordered event list for one account."""

    def __init__(
        self,
        account: str,
        now: int,
        window_duration: int,
        claim_policy: ClaimPolicy = ClaimPolicy.DEPOSIT_MATCH,
    ):
        if window_duration < 0:
            raise ValueError("window_duration must be non-negative")
        self.account = account
        self.now = now
        self.window_duration = window_duration
        self.claim_policy = ClaimPolicy(claim_policy)
        self.state = SubAccountState(account=account, now=now, window_duration=window_duration)
        self.deposits = DepositLedger(account)
        self.state.deposit_records = self.deposits.records
        self._touched: set[str] = set()

    def _queue(self, token: str) -> AcquiredQueue:
        self._touched.add(token)
        queue = self.state.acquired_queues.get(token)
        if queue is None:
            queue = AcquiredQueue()
            self.state.acquired_queues[token] = queue
        return queue

    def _in_window(self, timestamp: int) -> bool:
        return self.state.window_start <= timestamp <= self.now

    def _charge(self, event: Event) -> None:
        if event.spending_cost > 0 and self._in_window(event.timestamp):
            self.state.spending_in_window += event.spending_cost

    def build(self, events: Iterable[Event]) -> SubAccountState:
        """Replay ``events`` (already merged and ordered) and finalize."""
        for event in events:
            self.apply(event)
            self.state.events_replayed += 1
        return self.finalize()

    def apply(self, event: Event) -> None:
        if isinstance(event, Operation):
            self._apply_operation(event)
        elif isinstance(event, Transfer):
            self._apply_transfer(event)
        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")

    def _apply_operation(self, event: Operation) -> None:
        if event.kind in (OperationType.SWAP, OperationType.DEPOSIT):
            self._apply_swap_or_deposit(event)
        elif event.kind in (OperationType.WITHDRAW, OperationType.CLAIM):
            self._apply_withdraw_or_claim(event)
        elif event.kind == OperationType.APPROVE:
            logger.debug("APPROVE at %s: no balance effect", event.target)
        else:
            raise TypeError(f"Unsupported operation kind: {event.kind!r}")

    def _apply_swap_or_deposit(self, event: Operation) -> None:
        self._charge(event)

        consumed: list[AcquiredEntry] = []
        total_in = 0
        for token, amount in event.inputs:
            if amount <= 0:
                continue
            total_in += amount
            taken, _ = self._queue(token).consume(amount, event.timestamp, self.window_duration)
            consumed.extend(taken)

        total_consumed = sum(e.amount for e in consumed)
        if total_consumed > total_in:
            raise InvariantViolationError(
                f"Consumed {total_consumed} acquired from {total_in} input", account=self.account
            )
        oldest = min((e.acquired_at for e in consumed), default=event.timestamp)

        if event.kind == OperationType.DEPOSIT:
            self._record_deposit(event, oldest)

        for token, amount_out in event.outputs:
            if amount_out <= 0:
                continue
            from_acquired = amount_out * total_consumed // total_in if total_in > 0 else 0
            fresh = amount_out - from_acquired
            queue = self._queue(token)
            queue.append(from_acquired, oldest)
            queue.append(fresh, event.timestamp)
            logger.debug(
                "%s: %d %s -> %d inherits t=%d, %d new at t=%d",
                event.kind.name, amount_out, token, from_acquired, oldest, fresh, event.timestamp,
            )

    def _record_deposit(self, event: Operation, original_timestamp: int) -> None:
        legs = [(token, amount) for token, amount in event.inputs if amount > 0]
        paired = len(event.tokens_out) == len(event.tokens_in)
        shares: list[tuple[Optional[str], int]] = []

        if paired:
            shares = [
                (event.tokens_out[i], event.amounts_out[i])
                for i, (_, amount) in enumerate(event.inputs)
                if amount > 0
            ]
        elif event.tokens_out and legs:
            total_out = event.amounts_out[0]
            share, leftover = divmod(total_out, len(legs))
            shares = [(event.tokens_out[0], share) for _ in legs]
            shares[0] = (event.tokens_out[0], share + leftover)
        else:
            shares = [(None, 0) for _ in legs]

        for (token, amount), (token_out, amount_out) in zip(legs, shares):
            self.deposits.record(
                target=event.target,
                token=token,
                amount=amount,
                deposited_at=event.timestamp,
                original_acquisition_timestamp=original_timestamp,
                token_out=token_out,
                amount_out=amount_out,
            )

    def _apply_withdraw_or_claim(self, event: Operation) -> None:
        for token, amount in event.outputs:
            if amount <= 0:
                continue

            match = self.deposits.match(event.target, token, amount)

            for burn in match.receipt_burns:
                self._queue(burn.token).consume(burn.amount, event.timestamp, self.window_duration)

            if match.matched > 0:
                self._queue(token).append(match.matched, match.oldest_original_timestamp)
                logger.debug(
                    "%s matched %d %s, inherits t=%d",
                    event.kind.name, match.matched, token, match.oldest_original_timestamp,
                )

            if match.unmatched <= 0:
                continue

            if (
                event.kind == OperationType.CLAIM
                and self.claim_policy == ClaimPolicy.POSITION
                and self.deposits.has_position(event.target)
            ):
                inherited = min(self.deposits.oldest_original_timestamp(event.target), event.timestamp)
                self._queue(token).append(match.unmatched, inherited)
                logger.debug(
                    "CLAIM: %d %s acquired via position at %s, inherits t=%d",
                    match.unmatched, token, event.target, inherited,
                )
            else:
                logger.debug(
                    "%s unmatched: %d %s not acquired", event.kind.name, match.unmatched, token
                )

    def _apply_transfer(self, event: Transfer) -> None:
        self._charge(event)
        if event.amount > 0:
            self._queue(event.token).consume(event.amount, event.timestamp, self.window_duration)

    def finalize(self) -> SubAccountState:
        self.deposits.check_invariants()
        for token in sorted(self._touched):
            balance = self.state.acquired_queues[token].prune_and_sum(self.now, self.window_duration)
            if balance < 0:
                raise InvariantViolationError(
                    f"Negative acquired balance {balance} for {token}", account=self.account
                )
            if balance > 0:
                self.state.acquired_balances[token] = balance
        logger.debug(
            "State built for %s: spending=%d, acquired tokens=%d",
            self.account, self.state.spending_in_window, len(self.state.acquired_balances),
        )
        return self.state


def build_state(
    events: Iterable[Event],
    account: str,
    now: int,
    window_duration: int,
    new_events: Iterable[Event] = (),
    claim_policy: ClaimPolicy = ClaimPolicy.DEPOSIT_MATCH,
) -> SubAccountState:
    """Merge, deduplicate, order and replay all events for ``account``."""
    ordered = merge_events(events, new_events, account=account)
    builder = StateBuilder(account, now, window_duration, claim_policy=claim_policy)
    return builder.build(ordered)
