"""
Diff between freshly computed state and the last published state.

Only changed values are emitted. Assets that still carry a non-zero published
balance but are absent from the new computation are zeroed explicitly, so
stale free-to-use balances never linger in the authoritative store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass
class PublishedState:
    """What the authoritative store currently holds for one account."""

    allowance: int = 0
    balances: dict[str, int] = field(default_factory=dict)
    updated_at: Optional[int] = None


@dataclass
class BatchUpdate:
    """One atomic update for one account."""

    account: str
    new_allowance: int
    balances: list[tuple[str, int]] = field(default_factory=list)
    allowance_changed: bool = False
    previous_allowance: int = 0

    @property
    def tokens(self) -> list[str]:
        return [token for token, _ in self.balances]

    @property
    def amounts(self) -> list[int]:
        return [amount for _, amount in self.balances]

    def to_dict(self) -> dict:
        return {
            "account": self.account,
            "new_allowance": str(self.new_allowance),
            "previous_allowance": str(self.previous_allowance),
            "allowance_changed": self.allowance_changed,
            "balances": [{"token": t, "balance": str(b)} for t, b in self.balances],
        }


def compute_update(
    account: str,
    new_allowance: int,
    acquired_balances: Mapping[str, int],
    published: PublishedState,
    threshold: int = 0,
) -> Optional[BatchUpdate]:
    """Return the minimal update, or None when nothing changed."""
    if threshold < 0:
        raise ValueError("threshold must be non-negative")

    allowance_changed = abs(new_allowance - published.allowance) > threshold

    changed: dict[str, int] = {}
    for token, balance in acquired_balances.items():
        if published.balances.get(token, 0) != balance:
            changed[token] = balance

    for token, balance in published.balances.items():
        if token not in acquired_balances and balance != 0:
            logger.info("Clearing stale acquired balance for %s: %d -> 0", token, balance)
            changed[token] = 0

    if not allowance_changed and not changed:
        logger.debug(
            "No changes for %s (allowance %d -> %d, %d tokens)",
            account, published.allowance, new_allowance, len(acquired_balances),
        )
        return None

    return BatchUpdate(
        account=account,
        new_allowance=new_allowance,
        balances=sorted(changed.items()),
        allowance_changed=allowance_changed,
        previous_allowance=published.allowance,
    )
