from __future__ import annotations

import sqlite3
import time
from typing import Any, Callable, List, Optional

from notevault.core.access.models import Actor, Role
from notevault.core.audit.models import AuditAction
from notevault.core.consent.models import ConsentRecord, ConsentStatus, ConsentType
from notevault.core.errors import NotGranted, ValidationError
from notevault.core.storage.sqlite import SqliteStore, append_only_triggers


def _consent_type(value: Any) -> ConsentType:
    try:
        return ConsentType(value)
    except ValueError as e:
        raise ValidationError("consent_type", "unknown consent type") from e


class ConsentStore(SqliteStore):
    """
    Append-only consent ledger.

    current_status() is derived from the latest record (timestamp, then insertion
    order); history() returns every record ever written.
    """

    def __init__(
        self,
        *,
        db_path: str,
        journal_mode: str = "WAL",
        audit: Any = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Any = None,
    ):
        self.audit = audit
        self.clock = clock or time.time
        super().__init__(db_path=db_path, journal_mode=journal_mode, logger=logger)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS consent_records (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              subject_id TEXT NOT NULL,
              consent_type TEXT NOT NULL,
              granted INTEGER NOT NULL,
              ts REAL NOT NULL,
              method TEXT NOT NULL,
              version TEXT NOT NULL,
              withdrawn_at REAL,
              reason TEXT NOT NULL,
              evidence TEXT NOT NULL
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_consent_subject_type ON consent_records(subject_id, consent_type, ts);")
        for ddl in append_only_triggers("consent_records"):
            conn.execute(ddl)

    def _insert(self, conn: sqlite3.Connection, rec: ConsentRecord) -> None:
        conn.execute(
            """
            INSERT INTO consent_records(id, subject_id, consent_type, granted, ts, method, version, withdrawn_at, reason, evidence)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rec.id,
                rec.subject_id,
                rec.consent_type.value,
                1 if rec.granted else 0,
                float(rec.timestamp),
                rec.method,
                rec.version,
                rec.withdrawn_at,
                rec.reason,
                rec.evidence,
            ),
        )

    def _latest(self, conn: sqlite3.Connection, subject_id: str, consent_type: ConsentType) -> Optional[ConsentRecord]:
        row = conn.execute(
            "SELECT * FROM consent_records WHERE subject_id=? AND consent_type=? ORDER BY ts DESC, seq DESC LIMIT 1",
            (str(subject_id), consent_type.value),
        ).fetchone()
        return self._row_to_record(row) if row else None

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ConsentRecord:
        return ConsentRecord(
            id=row["id"],
            subject_id=row["subject_id"],
            consent_type=ConsentType(row["consent_type"]),
            granted=bool(row["granted"]),
            timestamp=float(row["ts"]),
            method=row["method"],
            version=row["version"],
            withdrawn_at=row["withdrawn_at"],
            reason=row["reason"],
            evidence=row["evidence"],
        )

    def _audit(self, actor: Actor, action: AuditAction, rec: ConsentRecord) -> None:
        if self.audit is None:
            return
        self.audit.record_event(
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            action=action,
            details={"subject_id": rec.subject_id, "consent_type": rec.consent_type.value, "consent_id": rec.id, "method": rec.method},
        )

    # ---- public API ----
    def record_consent(
        self,
        subject_id: str,
        consent_type: Any,
        granted: bool,
        *,
        actor: Optional[Actor] = None,
        method: str = "explicit",
        version: str = "1.0",
        evidence: str = "",
        reason: str = "",
    ) -> ConsentRecord:
        if not str(subject_id or "").strip():
            raise ValidationError("subject_id", "required")
        ctype = _consent_type(consent_type)
        who = actor or Actor(user_id=str(subject_id), role=Role.client)
        rec = ConsentRecord(
            subject_id=str(subject_id),
            consent_type=ctype,
            granted=bool(granted),
            timestamp=float(self.clock()),
            method=method,
            version=version,
            evidence=evidence,
            reason=reason,
        )
        with self._session() as conn:
            self._insert(conn, rec)
        self._audit(who, AuditAction.consent_granted if rec.granted else AuditAction.consent_withdrawn, rec)
        return rec

    def withdraw(
        self,
        subject_id: str,
        consent_type: Any,
        reason: str = "",
        *,
        actor: Optional[Actor] = None,
        method: str = "explicit",
    ) -> ConsentRecord:
        ctype = _consent_type(consent_type)
        who = actor or Actor(user_id=str(subject_id), role=Role.client)
        now = float(self.clock())
        with self._session() as conn:
            latest = self._latest(conn, subject_id, ctype)
            if latest is None or not latest.is_active_grant:
                raise NotGranted(str(subject_id), ctype.value)
            rec = ConsentRecord(
                subject_id=str(subject_id),
                consent_type=ctype,
                granted=False,
                timestamp=now,
                method=method,
                version=latest.version,
                withdrawn_at=now,
                reason=str(reason or ""),
            )
            self._insert(conn, rec)
        self._audit(who, AuditAction.consent_withdrawn, rec)
        return rec

    def current_status(self, subject_id: str, consent_type: Any) -> ConsentStatus:
        ctype = _consent_type(consent_type)
        with self._session() as conn:
            latest = self._latest(conn, subject_id, ctype)
        if latest is None:
            return ConsentStatus.unknown
        return ConsentStatus.granted if latest.is_active_grant else ConsentStatus.denied

    def has_consent(self, subject_id: str, consent_type: Any) -> bool:
        return self.current_status(subject_id, consent_type) == ConsentStatus.granted

    def history(self, subject_id: str, consent_type: Any = None) -> List[ConsentRecord]:
        sql = "SELECT * FROM consent_records WHERE subject_id=?"
        params: List[Any] = [str(subject_id)]
        if consent_type is not None:
            sql += " AND consent_type=?"
            params.append(_consent_type(consent_type).value)
        sql += " ORDER BY ts ASC, seq ASC"
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]
