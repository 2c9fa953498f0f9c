"""File-backed stand-in for the on-chain module.

One JSON document holds the event log, block timestamps, per-account limits
and published state, the vault valuation and the publish history. It
implements every collaborator the engine needs and is suitable for local
development, dry runs and tests.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Union

from eth_utils import keccak

from .allowance import AllowanceLimits
from .errors import MalformedEventError, UpstreamUnavailableError
from .events import Event, OrderKey, event_to_dict, normalize_address, order_key_from_dict, parse_events
from .publish import BatchUpdate, PublishedState
from .sources import Valuation
from .storage import ensure_private_dir, exclusive_lock, write_json_atomic

logger = logging.getLogger(__name__)


DEFAULT_LEDGER_PATH = Path.home() / ".spending-oracle" / "ledger.json"


def _empty_state() -> dict:
    return {
        "head_block": 0,
        "block_timestamps": {},
        "events": [],
        "accounts": {},
        "valuation": {"value": "0", "updated_at": None},
        "publications": [],
    }


class LocalLedger:
    """JSON-file implementation of the event source, reference store,
    publish sink and valuation source."""

    def __init__(
        self,
        path: Optional[Path] = None,
        on_skip: Optional[Callable[[MalformedEventError], None]] = None,
    ):
        self.path = path or DEFAULT_LEDGER_PATH
        self.on_skip = on_skip
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / f".{self.path.name}.lock"
        with exclusive_lock(self._lock_path):
            if not self.path.exists() or self.path.stat().st_size == 0:
                write_json_atomic(self.path, _empty_state())

    def _load_state(self) -> dict:
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise UpstreamUnavailableError(f"Cannot read ledger {self.path}: {exc}") from exc

    def _read(self) -> dict:
        with exclusive_lock(self._lock_path):
            return self._load_state()

    def _skip(self, exc: MalformedEventError) -> None:
        logger.warning("Skipping ledger event with a bad order key: %s", exc)
        if self.on_skip is not None:
            self.on_skip(exc)

    def _keyed(self, raws: Iterable[Any], report: bool = False) -> Iterator[tuple[OrderKey, Mapping]]:
        """Yield ``(order_key, raw)`` for stored events whose order key parses."""
        for raw in raws:
            try:
                yield order_key_from_dict(raw), raw
            except MalformedEventError as exc:
                if report:
                    self._skip(exc)

    # -- setup -----------------------------------------------------------

    def add_account(
        self,
        account: str,
        max_spending_bps: int = 500,
        window_duration: int = 86_400,
    ) -> None:
        limits = AllowanceLimits(max_spending_bps, window_duration)
        normalized = normalize_address(account)
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            record = state["accounts"].setdefault(
                normalized, {"allowance": "0", "balances": {}, "updated_at": None}
            )
            record["max_spending_bps"] = limits.max_spending_bps
            record["window_duration"] = limits.window_duration
            write_json_atomic(self.path, state)

    def set_published_state(
        self,
        account: str,
        allowance: int,
        balances: Optional[Mapping[str, int]] = None,
    ) -> None:
        normalized = normalize_address(account)
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            record = state["accounts"].setdefault(normalized, {"allowance": "0", "balances": {}})
            record["allowance"] = str(allowance)
            record["balances"] = {
                normalize_address(t): str(b) for t, b in (balances or {}).items() if b != 0
            }
            record["updated_at"] = int(time.time())
            write_json_atomic(self.path, state)

    def set_valuation(self, value: int, updated_at: Optional[int] = None) -> None:
        if value < 0:
            raise ValueError("Portfolio value must be non-negative")
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            state["valuation"] = {"value": str(value), "updated_at": updated_at}
            write_json_atomic(self.path, state)

    def set_block_timestamp(self, block_number: int, timestamp: int) -> None:
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            state["block_timestamps"][str(block_number)] = int(timestamp)
            state["head_block"] = max(int(state.get("head_block", 0)), block_number)
            write_json_atomic(self.path, state)

    def append_events(self, events: Iterable[Union[Event, Mapping[str, Any]]]) -> int:
        """Append events, ignoring order keys already present. Returns the count added."""
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            seen = {key for key, _ in self._keyed(state["events"])}
            added = 0
            for event in events:
                raw = dict(event) if isinstance(event, Mapping) else event_to_dict(event)
                try:
                    key = order_key_from_dict(raw)
                except MalformedEventError as exc:
                    self._skip(exc)
                    continue
                if key in seen:
                    continue
                seen.add(key)
                state["events"].append(raw)
                state["head_block"] = max(int(state.get("head_block", 0)), key.block_number)
                added += 1
            write_json_atomic(self.path, state)
        logger.debug("Appended %d events to %s", added, self.path)
        return added

    # -- event source ----------------------------------------------------

    def head_block(self) -> int:
        return int(self._read().get("head_block", 0))

    def timestamp_of(self, block_number: int) -> int:
        timestamps = self._read().get("block_timestamps", {})
        try:
            return int(timestamps[str(block_number)])
        except KeyError:
            raise UpstreamUnavailableError(f"No timestamp recorded for block {block_number}") from None

    def _events_between(self, from_block: int, to_block: int) -> list[Event]:
        state = self._read()
        timestamps = state.get("block_timestamps", {})

        def resolve(block_number: int) -> int:
            try:
                return int(timestamps[str(block_number)])
            except KeyError:
                raise UpstreamUnavailableError(
                    f"No timestamp recorded for block {block_number}"
                ) from None

        in_range = [
            raw for key, raw in self._keyed(state["events"], report=True)
            if from_block <= key.block_number <= to_block
        ]
        return parse_events(in_range, resolve_timestamp=resolve, on_skip=self.on_skip)

    def fetch_events(self, account: str, from_block: int, to_block: int) -> list[Event]:
        normalized = normalize_address(account)
        return [e for e in self._events_between(from_block, to_block) if e.account == normalized]

    def fetch_all_events(self, from_block: int, to_block: int) -> list[Event]:
        return self._events_between(from_block, to_block)

    # -- reference store -------------------------------------------------

    def get_published_state(self, account: str) -> PublishedState:
        record = self._read()["accounts"].get(normalize_address(account))
        if record is None:
            return PublishedState()
        return PublishedState(
            allowance=int(record.get("allowance", 0)),
            balances={t: int(b) for t, b in record.get("balances", {}).items()},
            updated_at=record.get("updated_at"),
        )

    def get_limits(self, account: str) -> AllowanceLimits:
        record = self._read()["accounts"].get(normalize_address(account))
        if record is None:
            return AllowanceLimits()
        return AllowanceLimits(
            max_spending_bps=int(record.get("max_spending_bps", 500)),
            window_duration=int(record.get("window_duration", 86_400)),
        )

    def active_accounts(self) -> list[str]:
        return sorted(self._read()["accounts"])

    # -- valuation source ------------------------------------------------

    def portfolio_value(self) -> Valuation:
        valuation = self._read().get("valuation", {})
        updated_at = valuation.get("updated_at")
        return Valuation(
            value=int(valuation.get("value", 0)),
            updated_at=int(updated_at) if updated_at is not None else None,
        )

    # -- publish sink ----------------------------------------------------

    def start_batch(self) -> None:
        pass

    def publish(self, update: BatchUpdate) -> str:
        """Apply the update atomically and return a pseudo transaction hash."""
        account = normalize_address(update.account)
        now = int(time.time())
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            record = state["accounts"].setdefault(account, {"allowance": "0", "balances": {}})
            record["allowance"] = str(update.new_allowance)
            balances = record.setdefault("balances", {})
            for token, amount in update.balances:
                if amount == 0:
                    balances.pop(token, None)
                else:
                    balances[token] = str(amount)
            record["updated_at"] = now

            publications = state.setdefault("publications", [])
            payload = update.to_dict()
            receipt = "0x" + keccak(
                text=json.dumps([len(publications), payload], sort_keys=True)
            ).hex()
            publications.append({"receipt": receipt, "published_at": now, "update": payload})
            write_json_atomic(self.path, state)

        logger.info(
            "Published update for %s: allowance=%d, %d balances (%s)",
            account, update.new_allowance, len(update.balances), receipt,
        )
        return receipt

    def publications(self, account: Optional[str] = None) -> list[dict]:
        entries = self._read().get("publications", [])
        if account is None:
            return entries
        normalized = normalize_address(account)
        return [p for p in entries if p["update"]["account"] == normalized]
