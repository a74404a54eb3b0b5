from __future__ import annotations

import os
import sqlite3

import pytest

from notevault.core.engine import Engine
from notevault.core.errors import AccessDenied, ValidationError


def test_from_root_writes_config_and_sets_up_logging(tmp_path, clock):
    eng = Engine.from_root(str(tmp_path), clock=clock.time)
    try:
        assert os.path.exists(os.path.join(str(tmp_path), "config", "engine.json"))
        assert os.path.isdir(os.path.join(str(tmp_path), "logs"))
        assert eng.logger.name == "notevault"
        assert os.path.exists(eng.notes.db_path)
    finally:
        eng.close()


def test_query_audit_is_restricted(engine, coach, other_coach, admin):
    n = engine.create_note(coach, client_id="client-x", body="b")
    engine.read_note(coach, n.id)

    assert engine.query_audit(admin).total == 1
    assert engine.query_audit(coach, note_id=n.id).entries[0].action.value == "view"
    with pytest.raises(AccessDenied):
        engine.query_audit(other_coach, note_id=n.id)
    with pytest.raises(AccessDenied):
        engine.query_audit(coach)


def test_audit_statistics_and_integrity_are_admin_only(engine, coach, admin):
    n = engine.create_note(coach, client_id="client-x", body="b")
    engine.read_note(coach, n.id)
    with pytest.raises(AccessDenied):
        engine.audit_statistics(coach)
    with pytest.raises(AccessDenied):
        engine.verify_audit_integrity(coach)
    assert engine.audit_statistics(admin)["by_action"] == {"view": 1}
    assert engine.verify_audit_integrity(admin).ok is True


def test_tampered_trail_is_reported_on_startup(tmp_path, clock, logger, coach):
    eng = Engine(root=str(tmp_path), clock=clock.time, logger=logger)
    n = eng.create_note(coach, client_id="client-x", body="b")
    eng.read_note(coach, n.id)

    conn = sqlite3.connect(eng.audit.db_path)
    try:
        conn.execute("DROP TRIGGER audit_entries_no_update")
        conn.execute("UPDATE audit_entries SET hash = ?", ("f" * 64,))
        conn.commit()
    finally:
        conn.close()

    Engine(root=str(tmp_path), clock=clock.time, logger=logger)
    assert any("integrity" in m for m in logger.messages("ERROR"))


def test_start_and_close_drive_the_retention_thread(tmp_path, clock, config_manager):
    data = config_manager.get().model_dump()
    data["retention"]["enabled"] = True
    config_manager.save(data)
    eng = Engine(root=config_manager.fs.root, clock=clock.time)
    eng.start()
    assert eng.retention.running is True
    eng.close()
    assert eng.retention.running is False


def test_consent_facade(engine, coach):
    engine.record_consent(coach, "client-x", "export", True, method="form", version="v2")
    assert engine.consent_status("client-x", "export").value == "granted"
    rec = engine.withdraw_consent(coach, "client-x", "export", "client asked")
    assert rec.granted is False
    assert [r.granted for r in engine.consent_history("client-x")] == [True, False]
    assert engine.consent_history("client-x")[0].method == "form"
    granted = engine.audit.query(action="consent_granted").entries[0]
    assert granted.actor_id == "coach-1"


def test_bulk_listing_is_scoped_to_initiator(engine, coach, other_coach, admin):
    n = engine.create_note(coach, client_id="client-x", body="b")
    m = engine.create_note(other_coach, client_id="client-y", body="b")
    mine = engine.submit_bulk_operation(coach, "archive", [n.id])
    engine.submit_bulk_operation(other_coach, "archive", [m.id])
    assert [op.id for op in engine.list_bulk_operations(coach)] == [mine]
    assert len(engine.list_bulk_operations(admin)) == 2


def test_tag_vocabulary_facade(engine, coach, client_actor, logger):
    rec = engine.register_tag(coach, "Peer Review", "reviewed with a peer")
    assert rec.name == "peer-review"
    assert "peer-review" in [t.name for t in engine.list_tags(category="custom")]
    assert engine.tag_analytics()["custom"] == 1
    assert any("peer-review" in m for m in logger.messages("INFO"))

    with pytest.raises(AccessDenied):
        engine.register_tag(client_actor, "self-diagnosis")
    assert engine.tag_analytics()["custom"] == 1
    with pytest.raises(ValidationError):
        engine.list_tags(category="imported")


def test_error_payload_is_redacted(engine, coach):
    with pytest.raises(AccessDenied) as ei:
        engine.audit_statistics(coach)
    d = ei.value.to_dict()
    assert d["code"] == "access_denied"
    assert d["context"]["reason"] == "not_authorized"
    assert d["recoverable"] is True
    err = AccessDenied("not_authorized", token="abc")
    assert err.to_dict()["context"]["token"] == "<redacted>"
