"""
Reconciliation engine.

Each invocation for one account runs Fetch -> Merge+Dedup -> Replay ->
Finalize -> Diff -> Publish/Skip. Nothing is retried inside an invocation;
the next trigger recomputes from scratch.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from .allowance import calculate_allowance
from .audit import AuditTrail, EventType
from .config import OracleConfig
from .errors import (
    InvariantViolationError,
    MalformedEventError,
    OracleError,
    PublishError,
    StaleDataError,
    UpstreamUnavailableError,
)
from .events import Event, normalize_address
from .publish import BatchUpdate, compute_update
from .sources import EventSource, PublishSink, ReferenceStore, Valuation, ValuationSource
from .state import SubAccountState, build_state

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    PUBLISHED = "published"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """What one invocation did for one account."""

    account: str
    outcome: Outcome
    allowance: Optional[int] = None
    update: Optional[BatchUpdate] = None
    receipt: Optional[str] = None
    error: Optional[str] = None
    state: Optional[SubAccountState] = None

    def to_dict(self) -> dict:
        d = {
            "account": self.account,
            "outcome": self.outcome.value,
            "allowance": str(self.allowance) if self.allowance is not None else None,
            "update": self.update.to_dict() if self.update else None,
            "receipt": self.receipt,
            "error": self.error,
        }
        if self.state is not None:
            d["spending_in_window"] = str(self.state.spending_in_window)
            d["acquired_balances"] = {
                k: str(v) for k, v in sorted(self.state.acquired_balances.items())
            }
        return d


def audit_skipped_events(audit: Optional[AuditTrail]) -> Callable[[MalformedEventError], None]:
    """Build an ``on_skip`` callback that records malformed events in the audit trail."""

    def record(exc: MalformedEventError) -> None:
        if audit is None:
            return
        raw = exc.raw if isinstance(exc.raw, dict) else None
        audit.log(
            EventType.EVENT_SKIPPED,
            account=raw.get("account") if raw else None,
            success=False,
            reason=str(exc),
        )

    return record


class ReconciliationEngine:
    """Rebuilds and publishes sub-account state from the event history."""

    def __init__(
        self,
        event_source: EventSource,
        reference_store: ReferenceStore,
        publish_sink: PublishSink,
        valuation_source: ValuationSource,
        config: Optional[OracleConfig] = None,
        audit: Optional[AuditTrail] = None,
        dry_run: bool = False,
    ):
        self.event_source = event_source
        self.reference_store = reference_store
        self.publish_sink = publish_sink
        self.valuation_source = valuation_source
        self.config = config or OracleConfig()
        self.audit = audit
        self.dry_run = dry_run
        self._module_address = (
            normalize_address(self.config.module_address) if self.config.module_address else None
        )

    def _audit(self, event_type: EventType, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **kwargs)

    def is_module(self, account: str) -> bool:
        return self._module_address is not None and account == self._module_address

    def _valuation(self, now: int) -> Valuation:
        valuation = self.valuation_source.portfolio_value()
        max_age = self.config.max_valuation_age
        if max_age is not None and valuation.updated_at is not None:
            age = now - valuation.updated_at
            if age > max_age:
                raise StaleDataError("portfolio valuation", age, max_age)
        return valuation

    def _history_range(self) -> tuple[int, int]:
        head = self.event_source.head_block()
        # Twice the look-back so acquisitions just outside the window are still seen.
        from_block = max(0, head - 2 * self.config.blocks_to_look_back)
        return from_block, head

    def reconcile(
        self,
        account: str,
        new_events: Iterable[Event] = (),
        now: Optional[int] = None,
    ) -> ReconcileResult:
        """Run one full invocation for ``account``.

        Upstream and publish failures propagate with nothing published.
        Invariant violations are logged with their traceback and re-raised.
        """
        account = normalize_address(account)
        if self.is_module(account):
            raise ValueError(f"{account} is the module address, not a sub-account")
        now = int(time.time()) if now is None else now

        logger.info("Reconciling %s at t=%d", account, now)
        self._audit(EventType.RECONCILE_STARTED, account=account)

        try:
            limits = self.reference_store.get_limits(account)
            published = self.reference_store.get_published_state(account)
            valuation = self._valuation(now)
            from_block, to_block = self._history_range()
            historical = self.event_source.fetch_events(account, from_block, to_block)

            state = build_state(
                historical,
                account,
                now,
                limits.window_duration,
                new_events=new_events,
                claim_policy=self.config.claim_policy,
            )
            allowance = calculate_allowance(
                valuation.value, limits.max_spending_bps, state.spending_in_window
            )
            update = compute_update(
                account,
                allowance,
                state.acquired_balances,
                published,
                threshold=self.config.allowance_threshold,
            )
        except InvariantViolationError as exc:
            logger.exception("Invariant violation while reconciling %s", account)
            self._audit(EventType.RECONCILE_FAILED, account=account, success=False, reason=str(exc))
            raise
        except UpstreamUnavailableError as exc:
            logger.warning("Upstream unavailable for %s: %s", account, exc)
            self._audit(EventType.RECONCILE_FAILED, account=account, success=False, reason=str(exc))
            raise

        logger.debug(
            "%s: value=%d bps=%d spent=%d -> allowance=%d",
            account, valuation.value, limits.max_spending_bps, state.spending_in_window, allowance,
        )

        if update is None:
            logger.info("No update needed for %s (allowance %d)", account, allowance)
            self._audit(EventType.UPDATE_SKIPPED, account=account, allowance=allowance)
            return ReconcileResult(account, Outcome.SKIPPED, allowance=allowance, state=state)

        if self.dry_run:
            logger.info("Dry run: would publish %s", update.to_dict())
            return ReconcileResult(
                account, Outcome.SKIPPED, allowance=allowance, update=update, state=state
            )

        try:
            receipt = self.publish_sink.publish(update)
        except (PublishError, UpstreamUnavailableError) as exc:
            logger.warning("Publish failed for %s: %s", account, exc)
            self._audit(EventType.RECONCILE_FAILED, account=account, success=False, reason=str(exc))
            raise

        logger.info(
            "Published %s: allowance %d -> %d, %d balances (%s)",
            account, update.previous_allowance, update.new_allowance, len(update.balances), receipt,
        )
        self._audit(
            EventType.UPDATE_PUBLISHED,
            account=account,
            allowance=allowance,
            receipt=receipt,
        )
        return ReconcileResult(
            account, Outcome.PUBLISHED, allowance=allowance, update=update, receipt=receipt, state=state
        )

    def _reconcile_guarded(
        self, account: str, new_events: Iterable[Event], now: Optional[int]
    ) -> ReconcileResult:
        try:
            return self.reconcile(account, new_events, now)
        except OracleError as exc:
            return ReconcileResult(account, Outcome.FAILED, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected failure reconciling %s", account)
            self._audit(EventType.RECONCILE_FAILED, account=account, success=False, reason=repr(exc))
            return ReconcileResult(account, Outcome.FAILED, error=repr(exc))

    def _accounts(self, accounts: Iterable[str]) -> list[str]:
        normalized: list[str] = []
        for account in accounts:
            try:
                address = normalize_address(account)
            except MalformedEventError:
                logger.warning("Ignoring invalid account address %r", account)
                continue
            if self.is_module(address):
                logger.info("Skipping %s: module address, not a sub-account", address)
                continue
            if address not in normalized:
                normalized.append(address)
        return normalized

    def refresh(
        self,
        accounts: Optional[Iterable[str]] = None,
        now: Optional[int] = None,
    ) -> list[ReconcileResult]:
        """Reconcile every account in parallel. One account's failure never stops the others."""
        if accounts is None:
            accounts = self.reference_store.active_accounts()
        targets = self._accounts(accounts)
        if not targets:
            logger.info("Sweep: no active sub-accounts")
            return []

        now = int(time.time()) if now is None else now
        workers = min(self.config.max_workers, len(targets))
        logger.info("Sweep: reconciling %d accounts with %d workers", len(targets), workers)
        self.publish_sink.start_batch()

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as pool:
            futures = [pool.submit(self._reconcile_guarded, a, (), now) for a in targets]
            results = [f.result() for f in futures]

        failed = sum(1 for r in results if r.outcome == Outcome.FAILED)
        published = sum(1 for r in results if r.outcome == Outcome.PUBLISHED)
        logger.info(
            "Sweep complete: %d published, %d skipped, %d failed",
            published, len(results) - published - failed, failed,
        )
        return results

    def on_events(self, events: Iterable[Event], now: Optional[int] = None) -> list[ReconcileResult]:
        """Reconcile each account touched by ``events`` with those events merged in."""
        by_account: dict[str, list[Event]] = defaultdict(list)
        for event in events:
            by_account[event.account].append(event)

        self.publish_sink.start_batch()
        results = []
        for account in self._accounts(by_account):
            results.append(self._reconcile_guarded(account, by_account[account], now))
        return results
