from __future__ import annotations

import json
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from notevault.core.access.models import Actor
from notevault.core.audit.models import AuditAction
from notevault.core.bulk.models import BulkItemResult, BulkKind, BulkOperation, BulkOptions, BulkStatus
from notevault.core.errors import AccessDenied, InvalidTransition, NotFound, NoteVaultError, ValidationError
from notevault.core.notes.models import AccessLevel, PrivacySettings
from notevault.core.storage.sqlite import SqliteStore
from notevault.core.tags.index import normalize_tags


def final_status(success_count: int, failure_count: int) -> BulkStatus:
    if failure_count == 0:
        return BulkStatus.completed
    if success_count == 0:
        return BulkStatus.failed
    return BulkStatus.partially_failed


class BulkMutationExecutor(SqliteStore):
    """
    Applies one mutation kind to many notes as a single trackable operation.

    NOTES:
    - every item goes through the NotesRepository (lock, evaluation, audit)
    - a failing item is recorded and the run continues; there is no rollback
    - execute() on a finished operation returns the stored report unchanged
    """

    def __init__(
        self,
        *,
        db_path: str,
        repository: Any,
        audit: Any,
        max_workers: int = 4,
        max_targets: int = 5000,
        journal_mode: str = "WAL",
        clock: Optional[Callable[[], float]] = None,
        logger: Any = None,
    ):
        self.repository = repository
        self.audit = audit
        self.max_workers = max(1, int(max_workers))
        self.max_targets = int(max_targets)
        self.clock = clock or time.time
        self._counter_lock = threading.Lock()
        super().__init__(db_path=db_path, journal_mode=journal_mode, logger=logger)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bulk_operations (
              id TEXT PRIMARY KEY,
              kind TEXT NOT NULL,
              initiator_id TEXT NOT NULL,
              status TEXT NOT NULL,
              created_at REAL NOT NULL,
              json TEXT NOT NULL
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_bulk_initiator ON bulk_operations(initiator_id, created_at);")

    # ---- persistence ----
    def _save(self, conn: sqlite3.Connection, op: BulkOperation) -> None:
        conn.execute(
            """
            INSERT INTO bulk_operations(id, kind, initiator_id, status, created_at, json) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET status=excluded.status, json=excluded.json
            """,
            (op.id, op.kind.value, op.initiator.user_id, op.status.value, float(op.created_at), op.model_dump_json()),
        )

    def _get(self, conn: sqlite3.Connection, operation_id: str) -> Optional[BulkOperation]:
        row = conn.execute("SELECT json FROM bulk_operations WHERE id=?", (str(operation_id),)).fetchone()
        return BulkOperation.model_validate(json.loads(row["json"])) if row else None

    # ---- public API ----
    def submit(self, initiator: Actor, kind: Any, note_ids: Iterable[str], options: Any = None) -> str:
        try:
            k = BulkKind(kind)
        except ValueError as e:
            raise ValidationError("kind", "unknown bulk operation kind") from e
        ids = [str(n) for n in (note_ids or []) if str(n).strip()]
        if not ids:
            raise ValidationError("note_ids", "required")
        if len(ids) > self.max_targets:
            raise ValidationError("note_ids", f"at most {self.max_targets} targets per operation")
        try:
            opts = options if isinstance(options, BulkOptions) else BulkOptions.model_validate(options or {})
        except PydanticValidationError as e:
            raise ValidationError("options", "invalid bulk options") from e
        opts = self._check_options(k, opts)

        op = BulkOperation(kind=k, note_ids=ids, initiator=initiator, options=opts, created_at=float(self.clock()))
        with self._session() as conn:
            self._save(conn, op)
        if self.logger:
            self.logger.info(f"Bulk operation submitted id={op.id} kind={k.value} targets={len(ids)}")
        return op.id

    @staticmethod
    def _check_options(kind: BulkKind, opts: BulkOptions) -> BulkOptions:
        """
        Reject payloads every item would fail on, before anything is persisted or audited.
        Returns the options with tags normalized and the access level canonical.
        """
        update: Dict[str, Any] = {}
        if kind in {BulkKind.tag_add, BulkKind.tag_remove}:
            tags = normalize_tags(opts.tags)
            if not tags:
                raise ValidationError("options.tags", "required")
            update["tags"] = tags
        if kind == BulkKind.privacy_change:
            if opts.access_level is None and not opts.privacy_settings:
                raise ValidationError("options", "access_level or privacy_settings required")
            if opts.access_level is not None:
                try:
                    update["access_level"] = AccessLevel(opts.access_level).value
                except ValueError as e:
                    raise ValidationError("options.access_level", "unknown access level") from e
            unknown = set(opts.privacy_settings) - set(PrivacySettings.model_fields)
            if unknown:
                raise ValidationError("options.privacy_settings", f"unknown setting(s): {', '.join(sorted(unknown))}")
            try:
                PrivacySettings.model_validate(opts.privacy_settings)
            except PydanticValidationError as e:
                raise ValidationError("options.privacy_settings", "invalid privacy settings") from e
        return opts.model_copy(update=update) if update else opts

    def get_status(self, operation_id: str) -> BulkOperation:
        with self._session() as conn:
            op = self._get(conn, operation_id)
        if op is None:
            raise NotFound(str(operation_id))
        return op

    def list_operations(self, *, initiator_id: Optional[str] = None, limit: int = 100) -> List[BulkOperation]:
        sql = "SELECT json FROM bulk_operations"
        params: List[Any] = []
        if initiator_id:
            sql += " WHERE initiator_id=?"
            params.append(str(initiator_id))
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(int(limit))
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [BulkOperation.model_validate(json.loads(r["json"])) for r in rows]

    def execute(self, operation: Union[str, BulkOperation]) -> BulkOperation:
        op_id = operation.id if isinstance(operation, BulkOperation) else str(operation)
        op = self._claim(op_id)
        if op.is_terminal:
            return op

        actor = op.initiator
        targets = op.unique_targets()
        self.audit.record_event(
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            action=AuditAction.bulk_started,
            details={"operation_id": op.id, "kind": op.kind.value, "targets": len(targets)},
        )

        results: Dict[str, BulkItemResult] = {}

        def run_one(note_id: str) -> None:
            res = self._apply(op, note_id)
            with self._counter_lock:
                results[note_id] = res

        try:
            if self.max_workers == 1 or len(targets) == 1:
                for nid in targets:
                    run_one(nid)
            else:
                with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets)), thread_name_prefix="bulk-worker") as pool:
                    for fut in [pool.submit(run_one, nid) for nid in targets]:
                        fut.result()
        finally:
            done = self._finish(op, targets, results)
        return done

    def _finish(self, op: BulkOperation, targets: List[str], results: Dict[str, BulkItemResult]) -> BulkOperation:
        """
        Persist the final report. Runs even when the item loop was interrupted;
        targets that never ran are reported as failures.
        """
        with self._counter_lock:
            final = {nid: results.get(nid) or BulkItemResult(success=False, error="not_attempted") for nid in targets}
        ok = sum(1 for r in final.values() if r.success)
        failed = len(final) - ok
        done = op.model_copy(
            update={
                "results": final,
                "success_count": ok,
                "failure_count": failed,
                "status": final_status(ok, failed),
                "completed_at": float(self.clock()),
            }
        )
        with self._session() as conn:
            self._save(conn, done)
        self.audit.record_event(
            actor_id=op.initiator.user_id,
            actor_role=op.initiator.role.value,
            action=AuditAction.bulk_completed,
            details={
                "operation_id": done.id,
                "kind": done.kind.value,
                "status": done.status.value,
                "success_count": done.success_count,
                "failure_count": done.failure_count,
            },
        )
        if self.logger:
            self.logger.info(f"Bulk operation {done.id} finished: {done.status.value} ({done.success_count} ok, {done.failure_count} failed)")
        return done

    def _claim(self, operation_id: str) -> BulkOperation:
        """
        pending -> running, atomically. Finished operations are returned as-is.
        """
        with self._session() as conn:
            op = self._get(conn, operation_id)
            if op is None:
                raise NotFound(str(operation_id))
            if op.is_terminal:
                return op
            if op.status != BulkStatus.pending:
                raise InvalidTransition(op.status.value, BulkStatus.running.value, operation_id=op.id)
            op = op.model_copy(update={"status": BulkStatus.running, "started_at": float(self.clock())})
            self._save(conn, op)
        return op

    def _apply(self, op: BulkOperation, note_id: str) -> BulkItemResult:
        actor = op.initiator
        o = op.options
        repo = self.repository
        try:
            if op.kind == BulkKind.delete:
                repo.delete(actor, note_id, details={"operation_id": op.id})
            elif op.kind == BulkKind.tag_add:
                repo.add_tags(actor, note_id, o.tags)
            elif op.kind == BulkKind.tag_remove:
                repo.remove_tags(actor, note_id, o.tags)
            elif op.kind == BulkKind.archive:
                repo.archive(actor, note_id, archive_reason=o.archive_reason)
            elif op.kind == BulkKind.restore:
                repo.restore(actor, note_id)
            elif op.kind == BulkKind.privacy_change:
                repo.change_privacy(actor, note_id, access_level=o.access_level, privacy_settings=o.privacy_settings)
            elif op.kind == BulkKind.category_assign:
                repo.assign_category(actor, note_id, o.category_id)
        except AccessDenied as e:
            return BulkItemResult(success=False, error=e.reason)
        except NoteVaultError as e:
            if self.logger:
                self.logger.warning(f"Bulk {op.id} item {note_id} failed: {e.code}")
            return BulkItemResult(success=False, error=e.code)
        except Exception as e:  # noqa: BLE001
            # one broken item must not strand the operation in `running`
            if self.logger:
                self.logger.error(f"Bulk {op.id} item {note_id} raised {type(e).__name__}: {e}")
            return BulkItemResult(success=False, error="internal_error")
        return BulkItemResult(success=True)
