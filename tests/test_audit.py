"""Tests for tamper-evident audit trail behavior."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from spending_oracle.audit import AuditChainError, AuditTrail, EventType


ACCOUNT = "0x" + "a" * 40


def _trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.RECONCILE_STARTED, account=ACCOUNT)
    trail.log(EventType.UPDATE_PUBLISHED, account=ACCOUNT, allowance=500, receipt="0xabc")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    second = json.loads(lines[1])
    second["allowance"] = "999999"
    lines[1] = json.dumps(second, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(AuditChainError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_entry_breaks_chain(tmp_path):
    trail = _trail(tmp_path)
    for _ in range(3):
        trail.log(EventType.UPDATE_SKIPPED, account=ACCOUNT)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(AuditChainError) as exc_info:
        trail.read_events()
    assert exc_info.value.line_number == 2


def test_chain_continues_across_instances(tmp_path):
    _trail(tmp_path).log(EventType.RECONCILE_STARTED, account=ACCOUNT)
    trail = _trail(tmp_path)
    trail.log(EventType.UPDATE_SKIPPED, account=ACCOUNT, allowance=10)

    events = trail.read_events()
    assert [e.event_type for e in events] == ["reconcile_started", "update_skipped"]
    assert events[1].allowance == "10"


def test_filters(tmp_path):
    trail = _trail(tmp_path)
    other = "0x" + "b" * 40
    trail.log(EventType.RECONCILE_STARTED, account=ACCOUNT)
    trail.log(EventType.RECONCILE_FAILED, account=ACCOUNT, success=False, reason="rpc down")
    trail.log(EventType.RECONCILE_STARTED, account=other)

    assert len(trail.read_events(account=ACCOUNT)) == 2
    assert len(trail.read_events(event_type=EventType.RECONCILE_STARTED)) == 2
    (latest,) = trail.read_events(limit=1)
    assert latest.account == other

    (failed,) = trail.read_events(event_type=EventType.RECONCILE_FAILED)
    assert not failed.success
    assert failed.reason == "rpc down"


def test_published_receipt_is_recorded(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.UPDATE_PUBLISHED, account=ACCOUNT, allowance=7_500, receipt="0xfeed")

    (event,) = _trail(tmp_path).read_events()
    assert (event.allowance, event.receipt) == ("7500", "0xfeed")
    assert event.prev_hash is None


def test_env_key_is_used(tmp_path, monkeypatch):
    monkeypatch.setenv("ORACLE_AUDIT_HMAC_KEY", "shared-secret")
    trail = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "unused" / "key")
    trail.log(EventType.RECONCILE_STARTED, account=ACCOUNT)

    assert not (tmp_path / "unused" / "key").exists()
    reader = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "unused" / "key")
    assert len(reader.read_events()) == 1


def test_concurrent_appends_keep_chain_valid(tmp_path):
    trail = _trail(tmp_path)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda i: trail.log(EventType.UPDATE_SKIPPED, account=ACCOUNT, allowance=i), range(50)))

    assert len(trail.read_events(limit=0)) == 50
