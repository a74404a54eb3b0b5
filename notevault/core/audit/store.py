from __future__ import annotations

import json
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from notevault.core.audit.hasher import GENESIS_HASH, chain_record, compute_hash, unchain_record
from notevault.core.audit.models import AuditAction, AuditEntry, AuditPage, IntegrityReport
from notevault.core.audit.redaction import redact_diff, redact_value
from notevault.core.errors import ValidationError
from notevault.core.storage.sqlite import SqliteStore, append_only_triggers


MAX_PAGE_SIZE = 1000


class AuditLog(SqliteStore):
    """
    Append-only audit trail backed by SQLite.

    NOTES:
    - there is no update/delete API; table triggers abort UPDATE and DELETE
    - every entry is chained to its predecessor with SHA-256 (prev_hash -> hash)
    - previous/new values are redacted before they are written (no note body)
    """

    def __init__(
        self,
        *,
        db_path: str,
        journal_mode: str = "WAL",
        default_page_size: int = 50,
        clock: Optional[Callable[[], float]] = None,
        logger: Any = None,
    ):
        self.default_page_size = int(default_page_size)
        self.clock = clock or time.time
        super().__init__(db_path=db_path, journal_mode=journal_mode, logger=logger)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_entries (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              note_id TEXT,
              actor_id TEXT NOT NULL,
              actor_role TEXT NOT NULL,
              action TEXT NOT NULL,
              ts REAL NOT NULL,
              success INTEGER NOT NULL,
              denial_reason TEXT,
              prev_hash TEXT NOT NULL,
              hash TEXT NOT NULL,
              json TEXT NOT NULL
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_note ON audit_entries(note_id, ts);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_entries(actor_id, ts);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_entries(action, ts);")
        for ddl in append_only_triggers("audit_entries"):
            conn.execute(ddl)

    # ---- writes ----
    def record(self, entry: AuditEntry) -> AuditEntry:
        """
        Append one entry. Returns the stored (redacted, chained) entry.
        """
        clean = entry.model_copy(
            update={
                "previous_values": redact_diff(entry.previous_values),
                "new_values": redact_diff(entry.new_values),
                "details": redact_value(dict(entry.details or {})),
                "prev_hash": None,
                "hash": None,
            }
        )
        payload = unchain_record(clean.model_dump(mode="json"))
        with self._session() as conn:
            row = conn.execute("SELECT hash FROM audit_entries ORDER BY seq DESC LIMIT 1").fetchone()
            prev = str(row["hash"]) if row else GENESIS_HASH
            rec = chain_record(payload=payload, prev_hash=prev)
            conn.execute(
                """
                INSERT INTO audit_entries(id, note_id, actor_id, actor_role, action, ts, success, denial_reason, prev_hash, hash, json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rec["id"],
                    rec.get("note_id"),
                    rec["actor_id"],
                    rec["actor_role"],
                    rec["action"],
                    float(rec["timestamp"]),
                    1 if rec["success"] else 0,
                    rec.get("denial_reason"),
                    rec["prev_hash"],
                    rec["hash"],
                    json.dumps(rec, ensure_ascii=False),
                ),
            )
        return AuditEntry.model_validate(rec)

    def record_event(
        self,
        *,
        actor_id: str,
        actor_role: str,
        action: AuditAction,
        success: bool = True,
        note_id: Optional[str] = None,
        denial_reason: Optional[str] = None,
        previous_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            note_id=note_id,
            actor_id=str(actor_id),
            actor_role=str(actor_role),
            action=action,
            timestamp=float(self.clock()),
            success=bool(success),
            denial_reason=None if success else denial_reason,
            previous_values=previous_values,
            new_values=new_values,
            details=dict(details or {}),
        )
        return self.record(entry)

    # ---- reads ----
    def _where(
        self,
        *,
        note_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        date_from: Optional[float] = None,
        date_to: Optional[float] = None,
        success: Optional[bool] = None,
    ):
        where: List[str] = []
        params: List[Any] = []
        if note_id:
            where.append("note_id = ?")
            params.append(str(note_id))
        if actor_id:
            where.append("actor_id = ?")
            params.append(str(actor_id))
        if action:
            where.append("action = ?")
            params.append(AuditAction(action).value)
        if date_from is not None:
            where.append("ts >= ?")
            params.append(float(date_from))
        if date_to is not None:
            where.append("ts <= ?")
            params.append(float(date_to))
        if success is not None:
            where.append("success = ?")
            params.append(1 if success else 0)
        clause = (" WHERE " + " AND ".join(where)) if where else ""
        return clause, params

    def query(
        self,
        *,
        note_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        date_from: Optional[float] = None,
        date_to: Optional[float] = None,
        success: Optional[bool] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        order: str = "desc",
    ) -> AuditPage:
        if int(page) < 1:
            raise ValidationError("page", "must be >= 1")
        size = int(page_size or self.default_page_size)
        if size < 1 or size > MAX_PAGE_SIZE:
            raise ValidationError("page_size", f"must be between 1 and {MAX_PAGE_SIZE}")
        direction = str(order or "desc").lower()
        if direction not in {"asc", "desc"}:
            raise ValidationError("order", "must be asc or desc")
        try:
            clause, params = self._where(
                note_id=note_id,
                actor_id=actor_id,
                action=action,
                date_from=date_from,
                date_to=date_to,
                success=success,
            )
        except ValueError as e:
            raise ValidationError("action", "unknown audit action") from e

        dir_sql = "ASC" if direction == "asc" else "DESC"
        with self._session() as conn:
            total = int(conn.execute(f"SELECT COUNT(1) FROM audit_entries{clause}", params).fetchone()[0])
            rows = conn.execute(
                f"SELECT json FROM audit_entries{clause} ORDER BY ts {dir_sql}, seq {dir_sql} LIMIT ? OFFSET ?",
                params + [size, (int(page) - 1) * size],
            ).fetchall()
        entries = [AuditEntry.model_validate(json.loads(r["json"])) for r in rows]
        total_pages = (total + size - 1) // size
        return AuditPage(entries=entries, total=total, page=int(page), page_size=size, total_pages=total_pages)

    def count(self) -> int:
        with self._session() as conn:
            row = conn.execute("SELECT COUNT(1) FROM audit_entries").fetchone()
            return int(row[0] if row else 0)

    def verify_integrity(self) -> IntegrityReport:
        """
        Walk the chain in append order and recompute every hash.
        """
        prev = GENESIS_HASH
        checked = 0
        with self._session() as conn:
            rows = conn.execute("SELECT id, prev_hash, hash, json FROM audit_entries ORDER BY seq ASC").fetchall()
        for r in rows:
            checked += 1
            try:
                rec = json.loads(r["json"])
            except json.JSONDecodeError:
                return IntegrityReport(ok=False, checked=checked, broken_at=r["id"], message="unreadable entry")
            if r["prev_hash"] != prev or rec.get("prev_hash") != prev:
                return IntegrityReport(ok=False, checked=checked, broken_at=r["id"], message="prev_hash mismatch")
            expected = compute_hash(prev, unchain_record(rec))
            if r["hash"] != expected or rec.get("hash") != expected:
                return IntegrityReport(ok=False, checked=checked, broken_at=r["id"], message="hash mismatch")
            prev = expected
        return IntegrityReport(ok=True, checked=checked, message="ok", head_hash=prev if checked else None)

    def statistics(self, *, date_from: Optional[float] = None, date_to: Optional[float] = None, top_n: int = 10) -> Dict[str, Any]:
        clause, params = self._where(date_from=date_from, date_to=date_to)
        with self._session() as conn:
            total = int(conn.execute(f"SELECT COUNT(1) FROM audit_entries{clause}", params).fetchone()[0])
            denied_clause = clause + (" AND " if clause else " WHERE ") + "success = 0"
            denials = int(conn.execute(f"SELECT COUNT(1) FROM audit_entries{denied_clause}", params).fetchone()[0])
            by_action = {
                str(r["action"]): int(r["n"])
                for r in conn.execute(
                    f"SELECT action, COUNT(1) AS n FROM audit_entries{clause} GROUP BY action ORDER BY action", params
                ).fetchall()
            }
            top = [
                {"actor_id": str(r["actor_id"]), "count": int(r["n"])}
                for r in conn.execute(
                    f"SELECT actor_id, COUNT(1) AS n FROM audit_entries{clause} GROUP BY actor_id ORDER BY n DESC, actor_id ASC LIMIT ?",
                    params + [int(top_n)],
                ).fetchall()
            ]
        return {
            "total": total,
            "successes": total - denials,
            "denials": denials,
            "by_action": by_action,
            "top_actors": top,
        }
