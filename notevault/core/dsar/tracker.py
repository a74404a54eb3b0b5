from __future__ import annotations

"""
Data subject request workflow (GDPR rights of access, erasure, portability, ...).

Design constraints:
- review workflow: submitted -> in_review -> fulfilled | rejected
- erasure runs through the NotesRepository with a system actor (per-note lock, audit)
- exports under a request need an active `export` consent of the subject
"""

import json
import sqlite3
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from notevault.core.access.models import Actor, DenialReason, Role
from notevault.core.audit.models import AuditAction
from notevault.core.consent.models import ConsentType
from notevault.core.errors import AccessDenied, InvalidTransition, NotFound, NoteVaultError, ValidationError
from notevault.core.notes.export import ExportFormat, export_notes
from notevault.core.storage.sqlite import SqliteStore


class RequestType(str, Enum):
    access = "access"
    rectification = "rectification"
    erasure = "erasure"
    portability = "portability"
    restriction = "restriction"
    objection = "objection"


class RequestStatus(str, Enum):
    submitted = "submitted"
    in_review = "in_review"
    fulfilled = "fulfilled"
    rejected = "rejected"


ALLOWED_TRANSITIONS = {
    RequestStatus.submitted: {RequestStatus.in_review},
    RequestStatus.in_review: {RequestStatus.fulfilled, RequestStatus.rejected},
}

REVIEWER_ROLES = {Role.admin, Role.system}

RESTRICTED_CONSENTS = (ConsentType.data_processing, ConsentType.analytics)


class DataSubjectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subject_id: str = Field(min_length=1, max_length=128)
    request_type: RequestType
    details: str = Field(default="", max_length=2000)
    submitted_by: str = Field(min_length=1, max_length=128)
    status: RequestStatus = RequestStatus.submitted
    submitted_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())
    resolved_at: Optional[float] = None
    result: Dict[str, Any] = Field(default_factory=dict)


class DataSubjectRequestTracker(SqliteStore):
    def __init__(
        self,
        *,
        db_path: str,
        repository: Any,
        consent: Any,
        audit: Any,
        journal_mode: str = "WAL",
        clock: Optional[Callable[[], float]] = None,
        logger: Any = None,
    ):
        self.repository = repository
        self.consent = consent
        self.audit = audit
        self.clock = clock or time.time
        self.system_actor = Actor.system("dsar")
        super().__init__(db_path=db_path, journal_mode=journal_mode, logger=logger)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS data_subject_requests (
              id TEXT PRIMARY KEY,
              subject_id TEXT NOT NULL,
              request_type TEXT NOT NULL,
              status TEXT NOT NULL,
              submitted_at REAL NOT NULL,
              json TEXT NOT NULL
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_dsr_subject ON data_subject_requests(subject_id, submitted_at);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_dsr_status ON data_subject_requests(status, submitted_at);")

    def _save(self, req: DataSubjectRequest) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO data_subject_requests(id, subject_id, request_type, status, submitted_at, json) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET status=excluded.status, json=excluded.json
                """,
                (req.id, req.subject_id, req.request_type.value, req.status.value, float(req.submitted_at), req.model_dump_json()),
            )

    # ---- public API ----
    def submit(self, subject_id: str, request_type: Any, details: str = "", *, submitted_by: Actor) -> DataSubjectRequest:
        if not str(subject_id or "").strip():
            raise ValidationError("subject_id", "required")
        try:
            rt = RequestType(request_type)
        except ValueError as e:
            raise ValidationError("request_type", "unknown request type") from e
        if len(str(details or "")) > 2000:
            raise ValidationError("details", "too long")
        now = float(self.clock())
        req = DataSubjectRequest(
            subject_id=str(subject_id).strip(),
            request_type=rt,
            details=str(details or ""),
            submitted_by=submitted_by.user_id,
            submitted_at=now,
            updated_at=now,
        )
        self._save(req)
        if self.logger:
            self.logger.info(f"Data subject request submitted id={req.id} type={rt.value}")
        return req

    def get(self, request_id: str) -> DataSubjectRequest:
        with self._session() as conn:
            row = conn.execute("SELECT json FROM data_subject_requests WHERE id=?", (str(request_id),)).fetchone()
        if row is None:
            raise NotFound(str(request_id))
        return DataSubjectRequest.model_validate(json.loads(row["json"]))

    def list_requests(self, *, subject_id: Optional[str] = None, status: Any = None) -> List[DataSubjectRequest]:
        where: List[str] = []
        params: List[Any] = []
        if subject_id:
            where.append("subject_id = ?")
            params.append(str(subject_id))
        if status is not None:
            try:
                params.append(RequestStatus(status).value)
            except ValueError as e:
                raise ValidationError("status", "unknown status") from e
            where.append("status = ?")
        sql = "SELECT json FROM data_subject_requests"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY submitted_at ASC, id ASC"
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [DataSubjectRequest.model_validate(json.loads(r["json"])) for r in rows]

    def update_status(self, request_id: str, new_status: Any, actor: Actor, *, note: str = "") -> DataSubjectRequest:
        """
        Move a request along the review workflow. Fulfilment side effects run
        before the new status is stored; if they fail the request stays in review.
        """
        try:
            target = RequestStatus(new_status)
        except ValueError as e:
            raise ValidationError("status", "unknown status") from e
        if actor.role not in REVIEWER_ROLES:
            raise AccessDenied(DenialReason.not_authorized.value, request_id=str(request_id))

        with self._lock:
            req = self.get(request_id)
            if target not in ALLOWED_TRANSITIONS.get(req.status, set()):
                raise InvalidTransition(req.status.value, target.value, request_id=req.id)

            result: Dict[str, Any] = dict(req.result)
            if target == RequestStatus.fulfilled:
                result.update(self._fulfil(req, actor))
            if note:
                result["note"] = str(note)[:500]

            now = float(self.clock())
            done = req.model_copy(
                update={
                    "status": target,
                    "updated_at": now,
                    "resolved_at": now if target in {RequestStatus.fulfilled, RequestStatus.rejected} else None,
                    "result": result,
                }
            )
            self._save(done)

        if target == RequestStatus.fulfilled:
            self.audit.record_event(
                actor_id=actor.user_id,
                actor_role=actor.role.value,
                action=AuditAction.dsar_fulfilled,
                details={
                    "request_id": done.id,
                    "request_type": done.request_type.value,
                    "subject_id": done.subject_id,
                    "counts": {k: len(v) if isinstance(v, (list, dict)) else v for k, v in result.items() if k in {"deleted", "retained", "errors", "withdrawn", "exported", "skipped"}},
                },
            )
        return done

    # ---- fulfilment ----
    def _fulfil(self, req: DataSubjectRequest, actor: Actor) -> Dict[str, Any]:
        rt = req.request_type
        if rt == RequestType.erasure:
            return self._erase(req)
        if rt in {RequestType.access, RequestType.portability}:
            return self._export(req)
        if rt in {RequestType.restriction, RequestType.objection}:
            return self._restrict(req, actor)
        # rectification is carried out through update_note; the request only records it
        return {"action": "recorded"}

    def _erase(self, req: DataSubjectRequest) -> Dict[str, Any]:
        deleted: List[str] = []
        retained: List[str] = []
        errors: Dict[str, str] = {}
        for nid in self.repository.ids_for_subject(req.subject_id):
            try:
                self.repository.delete(self.system_actor, nid, details={"request_id": req.id})
                deleted.append(nid)
            except AccessDenied as e:
                # legal hold
                retained.append(nid)
                if self.logger:
                    self.logger.warning(f"Erasure {req.id} kept note {nid}: {e.reason}")
            except NotFound:
                continue
            except NoteVaultError as e:
                errors[nid] = e.code
                if self.logger:
                    self.logger.warning(f"Erasure {req.id} could not delete note {nid}: {e.code}")
        return {"deleted": deleted, "retained": retained, "errors": errors}

    def _export(self, req: DataSubjectRequest) -> Dict[str, Any]:
        if not self.consent.has_consent(req.subject_id, ConsentType.export):
            raise AccessDenied(DenialReason.consent_required.value, request_id=req.id, subject_id=req.subject_id)
        ids = self.repository.ids_for_subject(req.subject_id)
        res = export_notes(self.repository, self.system_actor, ids, ExportFormat.json)
        return {"export": res.data.decode("utf-8"), "exported": list(res.exported), "skipped": list(res.skipped)}

    def _restrict(self, req: DataSubjectRequest, actor: Actor) -> Dict[str, Any]:
        withdrawn: List[str] = []
        for ctype in RESTRICTED_CONSENTS:
            if self.consent.has_consent(req.subject_id, ctype):
                self.consent.withdraw(req.subject_id, ctype, reason=f"data subject request {req.request_type.value}", actor=actor)
                withdrawn.append(ctype.value)
        return {"withdrawn": withdrawn}
