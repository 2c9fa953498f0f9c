"""Interfaces of the external collaborators the engine reads from and writes to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from .allowance import AllowanceLimits
from .events import Event
from .publish import BatchUpdate, PublishedState


@dataclass(frozen=True)
class Valuation:
    """Portfolio value of the vault in the common unit of account."""

    value: int
    updated_at: Optional[int] = None


class TimestampResolver(Protocol):
    def timestamp_of(self, block_number: int) -> int: ...


class EventSource(Protocol):
    def head_block(self) -> int: ...

    def fetch_events(self, account: str, from_block: int, to_block: int) -> list[Event]: ...

    def fetch_all_events(self, from_block: int, to_block: int) -> list[Event]: ...


class ReferenceStore(Protocol):
    def get_published_state(self, account: str) -> PublishedState: ...

    def get_limits(self, account: str) -> AllowanceLimits: ...

    def active_accounts(self) -> list[str]: ...


class PublishSink(Protocol):
    def start_batch(self) -> None: ...

    def publish(self, update: BatchUpdate) -> str: ...


class ValuationSource(Protocol):
    def portfolio_value(self) -> Valuation: ...
