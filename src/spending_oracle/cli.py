"""
Spending oracle CLI.

Commands:
    spending-oracle replay      Rebuild one account's state from an events file
    spending-oracle reconcile   Reconcile one account and publish the update
    spending-oracle sweep       Reconcile every active account
    spending-oracle run         Poll the node and sweep periodically
    spending-oracle audit       View the audit trail
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .audit import AuditTrail
from .config import OracleConfig
from .engine import Outcome, ReconcileResult, ReconciliationEngine, audit_skipped_events
from .errors import ConfigError, OracleError
from .events import parse_events
from .local_ledger import LocalLedger
from .rpc import (
    RpcClient,
    RpcEventSource,
    RpcPublishSink,
    RpcReferenceStore,
    RpcValuationSource,
)
from .runner import OracleRunner
from .state import ClaimPolicy, build_state
from .units import parse_duration


def _config(ctx: click.Context) -> OracleConfig:
    return ctx.obj["config"]


def _audit_trail(config: OracleConfig) -> AuditTrail:
    return AuditTrail(path=config.audit_path)


def _build_engine(
    config: OracleConfig,
    use_rpc: bool,
    ledger_path: Optional[Path],
    dry_run: bool = False,
):
    """Wire the engine to either the local ledger or the node. Returns (engine, source, client)."""
    audit = _audit_trail(config)
    on_skip = audit_skipped_events(audit)

    if use_rpc:
        config.validate(rpc=True)
        client = RpcClient(config.rpc_url, timeout=config.rpc_timeout)
        source = RpcEventSource(client, config.module_address, on_skip=on_skip)
        store = RpcReferenceStore(client, config.module_address, config.blocks_to_look_back)
        valuation = RpcValuationSource(client, config.module_address)
        sink = RpcPublishSink.from_private_key(
            client,
            config.module_address,
            config.private_key,
            chain_id=config.chain_id,
            gas_limit=config.gas_limit,
            wait_for_receipt=config.wait_for_receipt,
            receipt_timeout=config.receipt_timeout,
        )
        engine = ReconciliationEngine(source, store, sink, valuation, config, audit, dry_run=dry_run)
        return engine, source, client

    ledger = LocalLedger(ledger_path or config.ledger_path, on_skip=on_skip)
    engine = ReconciliationEngine(ledger, ledger, ledger, ledger, config, audit, dry_run=dry_run)
    return engine, ledger, None


def _echo_result(result: ReconcileResult) -> None:
    if result.outcome == Outcome.FAILED:
        click.echo(f"❌ {result.account}: {result.error}")
        return
    status = "✅" if result.outcome == Outcome.PUBLISHED else "⏭️ "
    click.echo(f"{status} {result.account}: {result.outcome.value}, allowance {result.allowance}")
    if result.update is not None:
        for token, balance in result.update.balances:
            click.echo(f"   {token}: {balance}")
    if result.receipt:
        click.echo(f"   Receipt: {result.receipt}")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity",
)
@click.pass_context
def main(ctx: click.Context, log_level: str):
    """Spending oracle for delegated sub-accounts."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = OracleConfig.from_env().validate()
    except ConfigError as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)
    ctx.obj = {"config": config}


@main.command()
@click.argument("events_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--account", required=True, help="Sub-account address")
@click.option("--window", default=None, help="Window duration (e.g. 86400, 24h, 7d)")
@click.option("--now", type=int, default=None, help="Evaluation time (unix seconds, default: now)")
@click.option(
    "--claim-policy",
    type=click.Choice([p.value for p in ClaimPolicy]),
    default=None,
    help="How claim outputs earn acquired status",
)
@click.option("--json", "as_json", is_flag=True, help="Print the state as JSON")
@click.pass_context
def replay(
    ctx: click.Context,
    events_json: Path,
    account: str,
    window: Optional[str],
    now: Optional[int],
    claim_policy: Optional[str],
    as_json: bool,
):
    """Rebuild an account's state offline from EVENTS_JSON."""
    config = _config(ctx)
    try:
        with open(events_json) as f:
            data = json.load(f)
        if isinstance(data, dict):
            raws = data.get("events", [])
            timestamps = {int(k): int(v) for k, v in data.get("block_timestamps", {}).items()}
        else:
            raws, timestamps = data, {}

        window_duration = parse_duration(window) if window else config.default_window
        events = parse_events(raws, resolve_timestamp=timestamps.__getitem__ if timestamps else None)
        state = build_state(
            events,
            account.lower(),
            int(time.time()) if now is None else now,
            window_duration,
            claim_policy=ClaimPolicy(claim_policy) if claim_policy else config.claim_policy,
        )
    except (OracleError, ValueError, KeyError) as e:
        click.echo(f"❌ Replay failed: {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(state.to_dict(), indent=2))
        return

    click.echo(f"✅ Replayed {state.events_replayed} events for {state.account}")
    click.echo(f"   Window:          {state.window_start} .. {state.now}")
    click.echo(f"   Spent in window: {state.spending_in_window}")
    click.echo("   Acquired balances:")
    if not state.acquired_balances:
        click.echo("      (none)")
    for token, balance in sorted(state.acquired_balances.items()):
        click.echo(f"      {token}: {balance}")
    if state.deposit_records:
        click.echo("   Deposits:")
        for record in state.deposit_records:
            click.echo(
                f"      {record.target} {record.token}: {record.remaining_amount}/{record.amount}"
                f" (acquired t={record.original_acquisition_timestamp})"
            )


@main.command()
@click.argument("account")
@click.option("--ledger", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Local ledger file (default: ORACLE_LEDGER_PATH)")
@click.option("--rpc", "use_rpc", is_flag=True, help="Use the node at ORACLE_RPC_URL")
@click.option("--dry-run", is_flag=True, help="Compute the update without publishing")
@click.option("--now", type=int, default=None, help="Evaluation time (unix seconds, default: now)")
@click.pass_context
def reconcile(
    ctx: click.Context,
    account: str,
    ledger: Optional[Path],
    use_rpc: bool,
    dry_run: bool,
    now: Optional[int],
):
    """Reconcile ACCOUNT once."""
    config = _config(ctx)
    client = None
    try:
        engine, _, client = _build_engine(config, use_rpc, ledger, dry_run=dry_run)
        result = engine.reconcile(account, now=now)
    except (OracleError, ValueError) as e:
        click.echo(f"❌ Reconcile failed: {e}", err=True)
        sys.exit(1)
    finally:
        if client is not None:
            client.close()

    if dry_run and result.update is not None:
        click.echo("🔍 Dry run, nothing published")
    _echo_result(result)


@main.command()
@click.option("--ledger", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Local ledger file (default: ORACLE_LEDGER_PATH)")
@click.option("--rpc", "use_rpc", is_flag=True, help="Use the node at ORACLE_RPC_URL")
@click.option("--dry-run", is_flag=True, help="Compute updates without publishing")
@click.option("--now", type=int, default=None, help="Evaluation time (unix seconds, default: now)")
@click.pass_context
def sweep(ctx: click.Context, ledger: Optional[Path], use_rpc: bool, dry_run: bool, now: Optional[int]):
    """Reconcile every active sub-account."""
    config = _config(ctx)
    client = None
    try:
        engine, _, client = _build_engine(config, use_rpc, ledger, dry_run=dry_run)
        results = engine.refresh(now=now)
    except OracleError as e:
        click.echo(f"❌ Sweep failed: {e}", err=True)
        sys.exit(1)
    finally:
        if client is not None:
            client.close()

    if not results:
        click.echo("No active sub-accounts.")
        return
    for result in results:
        _echo_result(result)
    if any(r.outcome == Outcome.FAILED for r in results):
        sys.exit(1)


@main.command()
@click.pass_context
def run(ctx: click.Context):
    """Poll the node for new events and sweep periodically until interrupted."""
    config = _config(ctx)
    try:
        engine, source, client = _build_engine(config, True, None)
    except OracleError as e:
        click.echo(f"❌ Cannot start: {e}", err=True)
        sys.exit(1)

    stop_event = threading.Event()

    def _stop(signum, frame):
        click.echo(f"\nReceived signal {signum}, stopping...")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    click.echo(f"🚀 Spending oracle for module {config.module_address}")
    click.echo(f"   Poll every {config.poll_interval}s, sweep every {config.sweep_interval}s")
    try:
        OracleRunner(engine, source, config).run_forever(stop_event)
    finally:
        client.close()


@main.command()
@click.option("--account", default=None, help="Filter by sub-account")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.pass_context
def audit(ctx: click.Context, account: Optional[str], limit: int):
    """View the audit trail."""
    trail = _audit_trail(_config(ctx))
    try:
        events = trail.read_events(account=account.lower() if account else None, limit=limit)
    except OracleError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        who = f" {event.account}" if event.account else ""
        allowance = f" allowance={event.allowance}" if event.allowance is not None else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        receipt = f" tx={event.receipt}" if event.receipt else ""
        click.echo(f"  {ts} {status} {event.event_type}{who}{allowance}{receipt}{reason}")


if __name__ == "__main__":
    main()
