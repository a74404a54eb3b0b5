from __future__ import annotations

import sqlite3

import pytest

from notevault.core.audit.store import AuditLog
from notevault.core.consent.models import ConsentStatus, ConsentType
from notevault.core.consent.store import ConsentStore
from notevault.core.errors import NotGranted, ValidationError

from .helpers.fakes import FakeClock


def _stores(tmp_path, clock=None):
    clock = clock or FakeClock()
    db = str(tmp_path / "runtime" / "notevault.sqlite")
    audit = AuditLog(db_path=db, clock=clock.time)
    return ConsentStore(db_path=db, audit=audit, clock=clock.time), audit


def test_unknown_until_recorded(tmp_path):
    cs, _ = _stores(tmp_path)
    assert cs.current_status("client-x", ConsentType.analytics) == ConsentStatus.unknown
    assert cs.has_consent("client-x", "analytics") is False


def test_history_grows_on_every_call_and_latest_wins(tmp_path):
    clock = FakeClock()
    cs, _ = _stores(tmp_path, clock)
    lengths = []
    cs.record_consent("client-x", "export", True)
    lengths.append(len(cs.history("client-x", "export")))
    clock.advance(1)
    cs.withdraw("client-x", "export", "changed my mind")
    lengths.append(len(cs.history("client-x", "export")))
    assert cs.current_status("client-x", "export") == ConsentStatus.denied
    clock.advance(1)
    cs.record_consent("client-x", "export", True)
    lengths.append(len(cs.history("client-x", "export")))

    assert lengths == [1, 2, 3]
    assert cs.current_status("client-x", "export") == ConsentStatus.granted
    hist = cs.history("client-x", "export")
    assert hist[0].granted is True and hist[0].withdrawn_at is None
    assert hist[1].withdrawn_at is not None and hist[1].reason == "changed my mind"


def test_same_timestamp_ties_broken_by_insertion_order(tmp_path):
    cs, _ = _stores(tmp_path)
    cs.record_consent("client-x", "analytics", True)
    cs.withdraw("client-x", "analytics")
    assert cs.current_status("client-x", "analytics") == ConsentStatus.denied
    cs.record_consent("client-x", "analytics", True)
    assert cs.current_status("client-x", "analytics") == ConsentStatus.granted


def test_withdraw_without_active_grant_fails(tmp_path):
    cs, _ = _stores(tmp_path)
    with pytest.raises(NotGranted):
        cs.withdraw("client-x", "data_sharing")
    cs.record_consent("client-x", "data_sharing", True)
    cs.withdraw("client-x", "data_sharing")
    with pytest.raises(NotGranted):
        cs.withdraw("client-x", "data_sharing")


def test_types_are_independent_and_validated(tmp_path):
    cs, _ = _stores(tmp_path)
    cs.record_consent("client-x", "analytics", True)
    assert cs.current_status("client-x", "export") == ConsentStatus.unknown
    with pytest.raises(ValidationError):
        cs.record_consent("client-x", "marketing", True)


def test_consent_changes_are_audited(tmp_path):
    cs, audit = _stores(tmp_path)
    cs.record_consent("client-x", "export", True)
    cs.withdraw("client-x", "export")
    actions = [e.action.value for e in audit.query(order="asc").entries]
    assert actions == ["consent_granted", "consent_withdrawn"]


def test_ledger_is_append_only_in_storage(tmp_path):
    cs, _ = _stores(tmp_path)
    cs.record_consent("client-x", "export", True)
    conn = sqlite3.connect(cs.db_path)
    try:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM consent_records")
    finally:
        conn.close()
    assert len(cs.history("client-x")) == 1
