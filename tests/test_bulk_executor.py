from __future__ import annotations

import pytest

from notevault.core.audit.store import AuditLog
from notevault.core.bulk.executor import BulkMutationExecutor, final_status
from notevault.core.bulk.models import BulkStatus
from notevault.core.engine import Engine
from notevault.core.errors import InvalidTransition, NotFound, StorageFailure, ValidationError

from .helpers.fakes import FlakyRepository


def _notes(engine, actor, n, **kw):
    return [engine.create_note(actor, client_id="client-x", body=f"note {i}", **kw).id for i in range(n)]


def test_final_status_rule():
    assert final_status(5, 0) == BulkStatus.completed
    assert final_status(4, 1) == BulkStatus.partially_failed
    assert final_status(0, 5) == BulkStatus.failed


def test_bulk_delete_with_one_foreign_note(engine, coach, other_coach):
    ids = _notes(engine, coach, 2) + _notes(engine, other_coach, 1) + _notes(engine, coach, 2)
    op_id = engine.submit_bulk_operation(coach, "delete", ids)
    op = engine.get_bulk_operation_status(coach, op_id)

    assert op.status == BulkStatus.partially_failed
    assert (op.success_count, op.failure_count) == (4, 1)
    assert op.results[ids[2]].success is False
    assert op.results[ids[2]].error == "insufficient_access_level"
    assert list(op.results) == ids
    assert engine.notes.load(ids[2]) is not None
    assert all(engine.notes.load(i) is None for i in ids if i != ids[2])


def test_all_denied_is_failed(engine, coach, other_coach):
    ids = _notes(engine, other_coach, 3)
    op = engine.get_bulk_operation_status(coach, engine.submit_bulk_operation(coach, "archive", ids))
    assert op.status == BulkStatus.failed
    assert op.failure_count == 3


def test_execute_twice_returns_same_report_without_reapplying(engine, coach):
    ids = _notes(engine, coach, 3, tags=["fear"])
    op_id = engine.submit_bulk_operation(coach, "tag_add", ids, {"tags": ["clarity"]}, execute=False)
    r1 = engine.execute_bulk_operation(coach, op_id)
    audit_after_first = engine.audit.count()
    r2 = engine.execute_bulk_operation(coach, op_id)

    assert r1 == r2
    assert r1.status == BulkStatus.completed
    assert engine.audit.count() == audit_after_first
    assert engine.tags.get("clarity").usage_count == 3
    assert all(engine.notes.load(i).version == 2 for i in ids)


def test_duplicates_are_applied_once(engine, coach):
    a, b = _notes(engine, coach, 2)
    op_id = engine.submit_bulk_operation(coach, "tag_add", [a, b, a, a], {"tags": ["homework"]})
    op = engine.get_bulk_operation_status(coach, op_id)
    assert list(op.results) == [a, b]
    assert op.success_count == 2
    assert op.note_ids == [a, b, a, a]
    assert engine.notes.load(a).tags == ["homework"]


def test_bulk_privacy_change_and_category(engine, coach, admin):
    ids = _notes(engine, coach, 3, privacy_settings={"require_reason_for_access": True})
    op = engine.get_bulk_operation_status(
        admin,
        engine.submit_bulk_operation(admin, "privacy_change", ids, {"access_level": "organization", "privacy_settings": {"allow_export": True}}),
    )
    assert op.status == BulkStatus.completed
    n = engine.notes.load(ids[0])
    assert n.access_level.value == "organization"
    assert n.privacy_settings.allow_export is True
    assert n.privacy_settings.require_reason_for_access is True

    op2 = engine.get_bulk_operation_status(coach, engine.submit_bulk_operation(coach, "category_assign", ids, {"category_id": "c1"}))
    assert op2.success_count == 3


def test_bulk_writes_aggregate_audit_entries(engine, coach):
    ids = _notes(engine, coach, 2)
    engine.submit_bulk_operation(coach, "archive", ids, {"archive_reason": "cleanup"})
    actions = [e.action.value for e in engine.audit.query(order="asc").entries]
    assert actions[0] == "bulk_started"
    assert actions[-1] == "bulk_completed"
    assert actions.count("archive") == 2
    done = engine.audit.query(action="bulk_completed").entries[0]
    assert done.details["success_count"] == 2


def test_submit_validation(engine, coach):
    with pytest.raises(ValidationError):
        engine.submit_bulk_operation(coach, "explode", ["a"])
    with pytest.raises(ValidationError):
        engine.submit_bulk_operation(coach, "delete", [])
    with pytest.raises(ValidationError):
        engine.submit_bulk_operation(coach, "tag_add", ["a"], {"tags": []})
    with pytest.raises(ValidationError):
        engine.submit_bulk_operation(coach, "privacy_change", ["a"], {})


@pytest.mark.parametrize(
    "kind,options,field",
    [
        ("tag_add", {"tags": ["!!!"]}, "tags"),
        ("tag_remove", {"tags": ["ok", "x" * 80]}, "tags"),
        ("privacy_change", {"access_level": "everyone"}, "options.access_level"),
        ("privacy_change", {"privacy_settings": {"bogus": True}}, "options.privacy_settings"),
        ("privacy_change", {"privacy_settings": {"allow_export": "maybe"}}, "options.privacy_settings"),
    ],
)
def test_malformed_options_are_rejected_before_any_write(engine, coach, kind, options, field):
    ids = _notes(engine, coach, 2)
    with pytest.raises(ValidationError) as ei:
        engine.submit_bulk_operation(coach, kind, ids, options)
    assert ei.value.field == field
    assert engine.audit.count() == 0
    assert engine.list_bulk_operations(coach) == []


def test_bulk_tags_are_normalized_at_submit(engine, coach):
    ids = _notes(engine, coach, 2)
    op_id = engine.submit_bulk_operation(coach, "tag_add", ids, {"tags": ["Career Goals", "career-goals"]}, execute=False)
    assert engine.get_bulk_operation_status(coach, op_id).options.tags == ["career-goals"]
    engine.execute_bulk_operation(coach, op_id)
    assert engine.notes.load(ids[0]).tags == ["career-goals"]


def test_missing_and_failing_items_do_not_stop_the_run(engine, coach, tmp_path, logger):
    ids = _notes(engine, coach, 3)
    flaky = FlakyRepository(engine.notes, {ids[1]: StorageFailure("disk gone")})
    ex = BulkMutationExecutor(
        db_path=str(tmp_path / "runtime" / "bulk.sqlite"),
        repository=flaky,
        audit=engine.audit,
        max_workers=1,
        logger=logger,
    )
    op_id = ex.submit(coach, "archive", ids + ["missing"])
    op = ex.execute(op_id)
    assert op.status == BulkStatus.partially_failed
    assert op.results[ids[1]].error == "storage_failure"
    assert op.results["missing"].error == "not_found"
    assert op.success_count == 2
    assert ex.get_status(op_id) == op
    assert any("storage_failure" in m for m in logger.messages("WARNING"))


@pytest.mark.parametrize("workers", [1, 3])
def test_unexpected_exception_is_an_item_failure(engine, coach, tmp_path, logger, workers):
    ids = _notes(engine, coach, 3)
    flaky = FlakyRepository(engine.notes, {ids[1]: RuntimeError("driver crashed")})
    ex = BulkMutationExecutor(
        db_path=str(tmp_path / "runtime" / f"bulk{workers}.sqlite"),
        repository=flaky,
        audit=engine.audit,
        max_workers=workers,
        logger=logger,
    )
    op_id = ex.submit(coach, "archive", ids)
    op = ex.execute(op_id)

    assert op.status == BulkStatus.partially_failed
    assert op.results[ids[1]].error == "internal_error"
    assert op.results[ids[0]].success and op.results[ids[2]].success
    assert ex.get_status(op_id).status == BulkStatus.partially_failed
    assert engine.notes.load(ids[2]).is_archived is True
    assert engine.audit.query(action="bulk_completed").entries[0].details["failure_count"] == 1
    assert any("RuntimeError" in m for m in logger.messages("ERROR"))
    assert ex.execute(op_id) == op


def test_interrupted_run_is_still_finalized(engine, coach, tmp_path, monkeypatch):
    ids = _notes(engine, coach, 3)
    ex = BulkMutationExecutor(db_path=str(tmp_path / "runtime" / "bulk-int.sqlite"), repository=engine.notes, audit=engine.audit, max_workers=1)
    real_apply = ex._apply  # noqa: SLF001

    def apply_then_stop(op, note_id):  # noqa: ANN001
        if note_id == ids[1]:
            raise KeyboardInterrupt
        return real_apply(op, note_id)

    monkeypatch.setattr(ex, "_apply", apply_then_stop)
    op_id = ex.submit(coach, "archive", ids)
    with pytest.raises(KeyboardInterrupt):
        ex.execute(op_id)

    op = ex.get_status(op_id)
    assert op.status == BulkStatus.partially_failed
    assert op.results[ids[0]].success is True
    assert op.results[ids[1]].error == "not_attempted"
    assert op.results[ids[2]].error == "not_attempted"
    assert op.completed_at is not None


def test_running_operation_cannot_be_claimed_again(engine, coach):
    ids = _notes(engine, coach, 1)
    op_id = engine.bulk.submit(coach, "archive", ids)
    engine.bulk._claim(op_id)  # noqa: SLF001
    with pytest.raises(InvalidTransition):
        engine.bulk.execute(op_id)


def test_status_is_private_to_initiator(engine, coach, other_coach, admin):
    ids = _notes(engine, coach, 1)
    op_id = engine.submit_bulk_operation(coach, "archive", ids)
    assert engine.get_bulk_operation_status(admin, op_id).id == op_id
    with pytest.raises(NotFound):
        engine.get_bulk_operation_status(other_coach, op_id)


def test_parallel_execution_counts(tmp_path, clock, coach):
    eng = Engine(root=str(tmp_path), clock=clock.time)
    ids = [eng.create_note(coach, client_id="x", body=str(i)).id for i in range(20)]
    op = eng.get_bulk_operation_status(coach, eng.submit_bulk_operation(coach, "tag_add", ids, {"tags": ["strategy"]}))
    assert (op.success_count, op.failure_count) == (20, 0)
    assert eng.tags.get("strategy").usage_count == 20
    assert isinstance(eng.audit, AuditLog)
