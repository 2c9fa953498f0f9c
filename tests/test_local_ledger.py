"""Tests for the file-backed local ledger."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from spending_oracle.allowance import AllowanceLimits
from spending_oracle.errors import UpstreamUnavailableError
from spending_oracle.events import Operation, OperationType, OrderKey
from spending_oracle.local_ledger import LocalLedger
from spending_oracle.publish import BatchUpdate


ACCOUNT = "0x" + "a" * 40
OTHER = "0x" + "e" * 40
ROUTER = "0x" + "c" * 40
USDC = "0x" + "1" * 40
WETH = "0x" + "2" * 40


def _raw(block, log=0, account=ACCOUNT, timestamp=None):
    raw = {
        "account": account,
        "target": ROUTER,
        "kind": "swap",
        "tokens_in": [USDC],
        "amounts_in": ["100"],
        "tokens_out": [WETH],
        "amounts_out": ["1"],
        "spending_cost": "100",
        "block_number": block,
        "log_index": log,
    }
    if timestamp is not None:
        raw["timestamp"] = timestamp
    return raw


class TestLocalLedger:
    def test_new_ledger_is_empty(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")

        assert ledger.head_block() == 0
        assert ledger.active_accounts() == []
        assert ledger.portfolio_value().value == 0
        assert ledger.get_published_state(ACCOUNT).allowance == 0
        assert ledger.get_limits(ACCOUNT) == AllowanceLimits()

    def test_append_events_deduplicates(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")

        assert ledger.append_events([_raw(1, timestamp=10), _raw(2, timestamp=20)]) == 2
        assert ledger.append_events([_raw(2, timestamp=20), _raw(3, timestamp=30)]) == 1
        assert ledger.head_block() == 3
        assert len(ledger.fetch_all_events(0, 10)) == 3

    def test_append_accepts_event_objects(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")
        event = Operation(ACCOUNT, ROUTER, OperationType.SWAP, (USDC,), (5,), (WETH,), (1,), 5, 50, OrderKey(4, 1))

        ledger.append_events([event])

        assert ledger.fetch_events(ACCOUNT, 0, 10) == [event]

    def test_fetch_filters_by_account_and_range(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")
        ledger.append_events([
            _raw(1, timestamp=10),
            _raw(2, account=OTHER, timestamp=20),
            _raw(5, timestamp=50),
        ])

        events = ledger.fetch_events(ACCOUNT, 0, 4)
        assert [e.order_key.block_number for e in events] == [1]

    def test_timestamps_resolved_from_blocks(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")
        ledger.set_block_timestamp(7, 1_700_000_000)
        ledger.append_events([_raw(7)])

        (event,) = ledger.fetch_events(ACCOUNT, 0, 10)
        assert event.timestamp == 1_700_000_000

    def test_missing_block_timestamp_is_upstream_failure(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")
        ledger.append_events([_raw(7)])

        with pytest.raises(UpstreamUnavailableError):
            ledger.fetch_events(ACCOUNT, 0, 10)

    def test_malformed_events_are_skipped(self, tmp_path):
        skipped = []
        ledger = LocalLedger(tmp_path / "ledger.json", on_skip=skipped.append)
        bad = _raw(2, timestamp=20)
        bad["kind"] = "teleport"
        ledger.append_events([_raw(1, timestamp=10), bad])

        assert len(ledger.fetch_events(ACCOUNT, 0, 10)) == 1
        assert len(skipped) == 1

    def test_stored_event_with_bad_block_number_is_skipped(self, tmp_path):
        path = tmp_path / "ledger.json"
        skipped = []
        ledger = LocalLedger(path, on_skip=skipped.append)
        ledger.append_events([_raw(1, timestamp=10)])
        data = json.loads(path.read_text())
        data["events"].append(_raw("garbage", account=OTHER, timestamp=20))
        path.write_text(json.dumps(data))

        events = ledger.fetch_events(ACCOUNT, 0, 10)

        assert [e.order_key.block_number for e in events] == [1]
        assert len(skipped) == 1
        assert skipped[0].raw["account"] == OTHER
        assert ledger.append_events([_raw(2, timestamp=30)]) == 1

    def test_append_accepts_hex_order_keys(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")

        assert ledger.append_events([_raw("0x1", log="0x2", timestamp=10)]) == 1
        assert ledger.append_events([_raw(1, log=2, timestamp=10)]) == 0

        (event,) = ledger.fetch_events(ACCOUNT, 0, 10)
        assert event.order_key == OrderKey(1, 2)
        assert ledger.head_block() == 1

    def test_append_skips_events_without_order_key(self, tmp_path):
        skipped = []
        ledger = LocalLedger(tmp_path / "ledger.json", on_skip=skipped.append)
        missing = _raw(3, timestamp=30)
        del missing["block_number"]

        assert ledger.append_events([missing, _raw(4, timestamp=40)]) == 1
        assert len(skipped) == 1
        assert ledger.head_block() == 4

    def test_publish_applies_update(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")
        ledger.set_published_state(ACCOUNT, 10, {USDC: 50})

        receipt = ledger.publish(BatchUpdate(ACCOUNT, 25, [(USDC, 0), (WETH, 3)], True, 10))

        state = ledger.get_published_state(ACCOUNT)
        assert receipt.startswith("0x") and len(receipt) == 66
        assert state.allowance == 25
        assert state.balances == {WETH: 3}
        assert ledger.publications(ACCOUNT)[0]["receipt"] == receipt

    def test_accounts_and_limits(self, tmp_path):
        ledger = LocalLedger(tmp_path / "ledger.json")
        ledger.add_account(OTHER, max_spending_bps=1000, window_duration=3600)
        ledger.add_account(ACCOUNT.upper().replace("0X", "0x"))

        assert ledger.active_accounts() == [ACCOUNT, OTHER]
        assert ledger.get_limits(OTHER) == AllowanceLimits(1000, 3600)

    def test_state_file_is_valid_json_after_concurrent_writes(self, tmp_path):
        path = tmp_path / "ledger.json"
        ledger = LocalLedger(path)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: ledger.append_events([_raw(i, timestamp=i)]), range(40)))

        data = json.loads(path.read_text())
        assert len(data["events"]) == 40

    def test_unreadable_ledger_is_upstream_failure(self, tmp_path):
        path = tmp_path / "ledger.json"
        ledger = LocalLedger(path)
        path.write_text("{not json")

        with pytest.raises(UpstreamUnavailableError):
            ledger.active_accounts()
