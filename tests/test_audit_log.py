from __future__ import annotations

import json
import sqlite3

import pytest

from notevault.core.audit.models import AuditAction, AuditEntry
from notevault.core.audit.store import AuditLog
from notevault.core.errors import ValidationError

from .helpers.fakes import FakeClock


def _log(tmp_path, clock=None) -> AuditLog:
    clock = clock or FakeClock()
    return AuditLog(db_path=str(tmp_path / "runtime" / "audit.sqlite"), clock=clock.time)


def _ev(log: AuditLog, **kw):
    base = dict(actor_id="coach-1", actor_role="coach", action=AuditAction.view, note_id="n1")
    base.update(kw)
    return log.record_event(**base)


def test_denied_entry_requires_reason():
    with pytest.raises(ValueError):
        AuditEntry(actor_id="a", actor_role="coach", action=AuditAction.view, success=False)
    with pytest.raises(ValueError):
        AuditEntry(actor_id="a", actor_role="coach", action=AuditAction.view, success=False, denial_reason="  ")
    with pytest.raises(ValueError):
        AuditEntry(actor_id="a", actor_role="coach", action=AuditAction.view, success=True, denial_reason="x")


def test_query_is_newest_first_by_default(tmp_path):
    clock = FakeClock()
    log = _log(tmp_path, clock)
    ids = []
    for _ in range(3):
        ids.append(_ev(log).id)
        clock.advance(1)
    page = log.query()
    assert [e.id for e in page.entries] == list(reversed(ids))
    asc = log.query(order="asc")
    assert [e.id for e in asc.entries] == ids


def test_query_filters_and_pagination(tmp_path):
    clock = FakeClock()
    log = _log(tmp_path, clock)
    for i in range(5):
        _ev(log, note_id=f"n{i % 2}")
        clock.advance(10)
    _ev(log, action=AuditAction.export, success=False, denial_reason="export_disabled")

    assert log.query(note_id="n0").total == 3
    assert log.query(success=False).total == 1
    assert log.query(action="export").entries[0].denial_reason == "export_disabled"
    start = clock.time() - 35
    assert log.query(date_from=start).total == 4

    p = log.query(page=2, page_size=4)
    assert (p.total, p.total_pages, p.page, len(p.entries)) == (6, 2, 2, 2)
    with pytest.raises(ValidationError):
        log.query(page=0)
    with pytest.raises(ValidationError):
        log.query(action="nonsense")


def test_storage_rejects_update_and_delete(tmp_path):
    log = _log(tmp_path)
    _ev(log)
    conn = sqlite3.connect(log.db_path)
    try:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("UPDATE audit_entries SET success = 0")
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM audit_entries")
    finally:
        conn.close()
    assert log.count() == 1
    assert not hasattr(log, "delete")
    assert not hasattr(log, "update")


def test_hash_chain_verifies_and_detects_tampering(tmp_path):
    log = _log(tmp_path)
    for _ in range(4):
        _ev(log)
    rep = log.verify_integrity()
    assert rep.ok is True and rep.checked == 4

    conn = sqlite3.connect(log.db_path)
    try:
        conn.execute("DROP TRIGGER audit_entries_no_update")
        row = conn.execute("SELECT seq, json FROM audit_entries ORDER BY seq LIMIT 1 OFFSET 1").fetchone()
        rec = json.loads(row[1])
        rec["actor_id"] = "someone-else"
        conn.execute("UPDATE audit_entries SET json=? WHERE seq=?", (json.dumps(rec), row[0]))
        conn.commit()
    finally:
        conn.close()

    bad = log.verify_integrity()
    assert bad.ok is False
    assert bad.checked == 2
    assert bad.message == "hash mismatch"


def test_values_are_redacted_before_storage(tmp_path):
    log = _log(tmp_path)
    e = _ev(
        log,
        action=AuditAction.modify,
        previous_values={"body": "client disclosed something private", "title": "t"},
        new_values={"body": "changed", "token": "abc"},
    )
    assert isinstance(e.previous_values["body"], dict)
    assert "sha256" in e.previous_values["body"]
    assert e.new_values["token"] == "<redacted>"
    conn = sqlite3.connect(log.db_path)
    try:
        blob = conn.execute("SELECT json FROM audit_entries").fetchone()[0]
    finally:
        conn.close()
    assert "disclosed" not in blob


def test_statistics(tmp_path):
    log = _log(tmp_path)
    _ev(log)
    _ev(log, actor_id="sup-1", actor_role="supervisor", success=False, denial_reason="insufficient_access_level")
    _ev(log, action=AuditAction.export)
    s = log.statistics()
    assert s["total"] == 3
    assert s["denials"] == 1
    assert s["successes"] == 2
    assert s["by_action"] == {"export": 1, "view": 2}
    assert s["top_actors"][0] == {"actor_id": "coach-1", "count": 2}
