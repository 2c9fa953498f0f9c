"""
Normalized activity events.

Two event kinds form a closed union: ``Operation`` (protocol interaction with
an operation kind) and ``Transfer`` (plain token transfer out of the vault).
Both are immutable and carry a resolved timestamp plus an ``OrderKey`` that
breaks timestamp ties and identifies duplicates.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Iterable, Mapping, NamedTuple, Optional, Union

from .errors import MalformedEventError

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


class OperationType(IntEnum):
    """Operation codes as emitted by the module contract."""

    SWAP = 1
    DEPOSIT = 2
    WITHDRAW = 3
    CLAIM = 4
    APPROVE = 5

    @classmethod
    def parse(cls, value: Any) -> "OperationType":
        if isinstance(value, OperationType):
            return value
        if isinstance(value, str) and not value.strip().isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise MalformedEventError(f"Unknown operation kind: {value!r}") from None
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise MalformedEventError(f"Unknown operation kind: {value!r}") from None


class OrderKey(NamedTuple):
    block_number: int
    log_index: int


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise MalformedEventError(f"Invalid Ethereum address: {address!r}")
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise MalformedEventError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def _check_amount(value: int, field_name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEventError(f"{field_name} must be an integer, got {value!r}")
    if value < 0:
        raise MalformedEventError(f"{field_name} must be non-negative, got {value}")


@dataclass(frozen=True)
class Operation:
    """A protocol interaction (swap, deposit, withdraw, claim, approve)."""

    account: str
    target: str
    kind: OperationType
    tokens_in: tuple[str, ...]
    amounts_in: tuple[int, ...]
    tokens_out: tuple[str, ...]
    amounts_out: tuple[int, ...]
    spending_cost: int
    timestamp: int
    order_key: OrderKey

    def __post_init__(self) -> None:
        if len(self.tokens_in) != len(self.amounts_in):
            raise MalformedEventError(
                f"tokens_in/amounts_in length mismatch ({len(self.tokens_in)} != {len(self.amounts_in)})"
            )
        if len(self.tokens_out) != len(self.amounts_out):
            raise MalformedEventError(
                f"tokens_out/amounts_out length mismatch ({len(self.tokens_out)} != {len(self.amounts_out)})"
            )
        for i, amount in enumerate(self.amounts_in):
            _check_amount(amount, f"amounts_in[{i}]")
        for i, amount in enumerate(self.amounts_out):
            _check_amount(amount, f"amounts_out[{i}]")
        _check_amount(self.spending_cost, "spending_cost")
        _check_amount(self.timestamp, "timestamp")

    @property
    def inputs(self) -> list[tuple[str, int]]:
        return list(zip(self.tokens_in, self.amounts_in))

    @property
    def outputs(self) -> list[tuple[str, int]]:
        return list(zip(self.tokens_out, self.amounts_out))


@dataclass(frozen=True)
class Transfer:
    """A direct token transfer out of the vault by a sub-account."""

    account: str
    token: str
    recipient: str
    amount: int
    spending_cost: int
    timestamp: int
    order_key: OrderKey

    def __post_init__(self) -> None:
        _check_amount(self.amount, "amount")
        _check_amount(self.spending_cost, "spending_cost")
        _check_amount(self.timestamp, "timestamp")


Event = Union[Operation, Transfer]

TimestampResolver = Callable[[int], int]


def sort_key(event: Event) -> tuple[int, int, int]:
    """Chronological replay order: timestamp, then block, then log index."""
    return (event.timestamp, event.order_key.block_number, event.order_key.log_index)


def _parse_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise MalformedEventError(f"{field_name} must be an integer, got {value!r}")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        raw = value.strip()
        try:
            parsed = int(raw, 16) if raw.lower().startswith("0x") else int(raw)
        except ValueError:
            raise MalformedEventError(f"{field_name} is not an integer: {value!r}") from None
    else:
        raise MalformedEventError(f"{field_name} must be an integer, got {value!r}")
    if parsed < 0:
        raise MalformedEventError(f"{field_name} must be non-negative, got {parsed}")
    return parsed


def _require(raw: Mapping[str, Any], key: str) -> Any:
    if key not in raw or raw[key] is None:
        raise MalformedEventError(f"Missing required field: {key}", raw=raw)
    return raw[key]


def _parse_list(raw: Mapping[str, Any], key: str) -> list:
    value = raw.get(key, [])
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise MalformedEventError(f"{key} must be a list", raw=raw)
    return list(value)


def order_key_from_dict(raw: Mapping[str, Any]) -> OrderKey:
    """Parse ``block_number`` and ``log_index`` (decimal or 0x hex) from a raw event."""
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"Event must be a mapping, got {type(raw).__name__}", raw=raw)
    try:
        return OrderKey(
            _parse_int(_require(raw, "block_number"), "block_number"),
            _parse_int(_require(raw, "log_index"), "log_index"),
        )
    except MalformedEventError as exc:
        if exc.raw is None:
            exc.raw = raw
        raise


def event_from_dict(
    raw: Mapping[str, Any],
    resolve_timestamp: Optional[TimestampResolver] = None,
) -> Event:
    """Normalize a mapping into an ``Operation`` or ``Transfer``.

    ``timestamp`` may be omitted, in which case it is resolved from
    ``block_number`` through ``resolve_timestamp``. Resolver failures are not
    malformed events and propagate unchanged.
    """
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"Event must be a mapping, got {type(raw).__name__}", raw=raw)

    try:
        event_type = str(raw.get("type", "operation")).lower()
        order_key = order_key_from_dict(raw)

        if raw.get("timestamp") is not None:
            timestamp = _parse_int(raw["timestamp"], "timestamp")
        elif resolve_timestamp is not None:
            timestamp = resolve_timestamp(order_key.block_number)
        else:
            raise MalformedEventError("Event has no timestamp and no resolver was given", raw=raw)

        if event_type == "operation":
            tokens_in = [normalize_address(t) for t in _parse_list(raw, "tokens_in")]
            amounts_in = [_parse_int(a, "amounts_in") for a in _parse_list(raw, "amounts_in")]
            tokens_out = [normalize_address(t) for t in _parse_list(raw, "tokens_out")]
            amounts_out = [_parse_int(a, "amounts_out") for a in _parse_list(raw, "amounts_out")]
            return Operation(
                account=normalize_address(_require(raw, "account")),
                target=normalize_address(_require(raw, "target")),
                kind=OperationType.parse(_require(raw, "kind")),
                tokens_in=tuple(tokens_in),
                amounts_in=tuple(amounts_in),
                tokens_out=tuple(tokens_out),
                amounts_out=tuple(amounts_out),
                spending_cost=_parse_int(raw.get("spending_cost", 0), "spending_cost"),
                timestamp=timestamp,
                order_key=order_key,
            )
        if event_type == "transfer":
            return Transfer(
                account=normalize_address(_require(raw, "account")),
                token=normalize_address(_require(raw, "token")),
                recipient=normalize_address(_require(raw, "recipient")),
                amount=_parse_int(_require(raw, "amount"), "amount"),
                spending_cost=_parse_int(raw.get("spending_cost", 0), "spending_cost"),
                timestamp=timestamp,
                order_key=order_key,
            )
        raise MalformedEventError(f"Unknown event type: {event_type!r}", raw=raw)
    except MalformedEventError as exc:
        if exc.raw is None:
            exc.raw = raw
        raise


def event_to_dict(event: Event) -> dict:
    if isinstance(event, Operation):
        return {
            "type": "operation",
            "account": event.account,
            "target": event.target,
            "kind": event.kind.name.lower(),
            "tokens_in": list(event.tokens_in),
            "amounts_in": [str(a) for a in event.amounts_in],
            "tokens_out": list(event.tokens_out),
            "amounts_out": [str(a) for a in event.amounts_out],
            "spending_cost": str(event.spending_cost),
            "timestamp": event.timestamp,
            "block_number": event.order_key.block_number,
            "log_index": event.order_key.log_index,
        }
    if isinstance(event, Transfer):
        return {
            "type": "transfer",
            "account": event.account,
            "token": event.token,
            "recipient": event.recipient,
            "amount": str(event.amount),
            "spending_cost": str(event.spending_cost),
            "timestamp": event.timestamp,
            "block_number": event.order_key.block_number,
            "log_index": event.order_key.log_index,
        }
    raise TypeError(f"Unsupported event type: {type(event).__name__}")


def parse_events(
    raws: Iterable[Mapping[str, Any]],
    resolve_timestamp: Optional[TimestampResolver] = None,
    on_skip: Optional[Callable[[MalformedEventError], None]] = None,
) -> list[Event]:
    """Parse many events, skipping (and logging) the malformed ones."""
    events: list[Event] = []
    for index, raw in enumerate(raws):
        try:
            events.append(event_from_dict(raw, resolve_timestamp))
        except MalformedEventError as exc:
            logger.warning("Skipping malformed event #%d: %s", index, exc)
            if on_skip is not None:
                on_skip(exc)
    return events
