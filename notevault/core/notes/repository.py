from __future__ import annotations

import json
import sqlite3
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from notevault.core.access.evaluator import AccessControlEvaluator
from notevault.core.access.models import Actor, DenialReason, NoteAction, Role
from notevault.core.audit.models import AuditAction
from notevault.core.crypto import ContentCipher
from notevault.core.errors import (
    AccessDenied,
    ConcurrencyConflict,
    NotFound,
    StorageFailure,
    ValidationError,
)
from notevault.core.notes.locks import NoteLockRegistry
from notevault.core.notes.models import AccessLevel, Note, NotePatch, PrivacySettings
from notevault.core.storage.sqlite import SqliteStore
from notevault.core.tags.index import normalize_tags


CREATOR_ROLES = {Role.coach, Role.supervisor, Role.admin}

# Mutation fn: plaintext note -> (new note, previous values, new values)
Mutator = Callable[[Note], Tuple[Note, Dict[str, Any], Dict[str, Any]]]


def _from_pydantic(e: PydanticValidationError) -> ValidationError:
    err = (e.errors() or [{}])[0]
    loc = ".".join(str(x) for x in err.get("loc", ()) if x is not None) or "input"
    return ValidationError(loc, str(err.get("msg", "invalid value")))


class NotesRepository(SqliteStore):
    """
    The single chokepoint for note mutation.

    Every call:
    - takes the per-note lock
    - asks the AccessControlEvaluator (system actors pass through the same path)
    - checks the optimistic version on write
    - writes the audit entry after the mutation commits, denials and failures included
    """

    def __init__(
        self,
        *,
        db_path: str,
        audit: Any,
        evaluator: Optional[AccessControlEvaluator] = None,
        locks: Optional[NoteLockRegistry] = None,
        tags: Any = None,
        cipher: Optional[ContentCipher] = None,
        journal_mode: str = "WAL",
        clock: Optional[Callable[[], float]] = None,
        logger: Any = None,
    ):
        self.audit = audit
        self.evaluator = evaluator or AccessControlEvaluator()
        self.locks = locks or NoteLockRegistry()
        self.tags = tags
        self.cipher = cipher
        self.clock = clock or time.time
        super().__init__(db_path=db_path, journal_mode=journal_mode, logger=logger)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notes (
              id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              client_id TEXT NOT NULL,
              session_id TEXT,
              category_id TEXT,
              is_archived INTEGER NOT NULL DEFAULT 0,
              legal_hold INTEGER NOT NULL DEFAULT 0,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              version INTEGER NOT NULL,
              json TEXT NOT NULL
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_owner ON notes(owner_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_client ON notes(client_id, created_at);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_created ON notes(created_at);")

    # ---- storage codec ----
    def _seal(self, note: Note) -> str:
        """Note -> stored json (body encrypted when a cipher is attached)."""
        d = note.model_dump(mode="json")
        d["shared_with"] = sorted(note.shared_with)
        if note.encrypted and self.cipher is not None:
            d["body"] = self.cipher.encrypt(note.body, note_id=note.id)
        return json.dumps(d, ensure_ascii=False)

    def _open(self, blob: str) -> Note:
        note = Note.model_validate(json.loads(blob))
        if note.encrypted and self.cipher is not None:
            note = note.model_copy(update={"body": self.cipher.decrypt(note.body, note_id=note.id)})
        return note

    def _select(self, conn: sqlite3.Connection, note_id: str) -> Optional[Note]:
        row = conn.execute("SELECT json FROM notes WHERE id=?", (str(note_id),)).fetchone()
        return self._open(row["json"]) if row else None

    def _insert(self, conn: sqlite3.Connection, note: Note) -> None:
        conn.execute(
            """
            INSERT INTO notes(id, owner_id, client_id, session_id, category_id, is_archived, legal_hold, created_at, updated_at, version, json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                note.id,
                note.owner_id,
                note.client_id,
                note.session_id,
                note.category_id,
                1 if note.is_archived else 0,
                1 if note.legal_hold else 0,
                float(note.created_at),
                float(note.updated_at),
                int(note.version),
                self._seal(note),
            ),
        )

    def _update(self, conn: sqlite3.Connection, note: Note, *, expected_version: int) -> None:
        cur = conn.execute(
            """
            UPDATE notes SET session_id=?, category_id=?, is_archived=?, legal_hold=?, updated_at=?, version=?, json=?
            WHERE id=? AND version=?
            """,
            (
                note.session_id,
                note.category_id,
                1 if note.is_archived else 0,
                1 if note.legal_hold else 0,
                float(note.updated_at),
                int(note.version),
                self._seal(note),
                note.id,
                int(expected_version),
            ),
        )
        if cur.rowcount == 0:
            raise ConcurrencyConflict(note.id)

    # ---- audit helpers ----
    def _audit(
        self,
        actor: Actor,
        action: AuditAction,
        *,
        note_id: Optional[str],
        success: bool = True,
        denial_reason: Optional[str] = None,
        previous_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.record_event(
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            action=action,
            note_id=note_id,
            success=success,
            denial_reason=denial_reason,
            previous_values=previous_values,
            new_values=new_values,
            details=details,
        )

    def _load_for(self, actor: Actor, note_id: str, audit_action: AuditAction) -> Note:
        with self._session() as conn:
            note = self._select(conn, note_id)
        if note is None:
            self._audit(actor, audit_action, note_id=str(note_id), success=False, denial_reason="not_found")
            raise NotFound(str(note_id))
        return note

    def _authorize(self, actor: Actor, note: Note, action: NoteAction, audit_action: AuditAction, reason: Optional[str]) -> None:
        decision = self.evaluator.evaluate(actor, note, action, reason=reason)
        if not decision.allowed:
            self._audit(
                actor,
                audit_action,
                note_id=note.id,
                success=False,
                denial_reason=decision.reason,
                details={"access_reason": reason} if reason else None,
            )
            raise AccessDenied(str(decision.reason), note_id=note.id, action=action.value)

    # ---- generic guarded mutation ----
    def _mutate(
        self,
        actor: Actor,
        note_id: str,
        action: NoteAction,
        audit_action: AuditAction,
        fn: Mutator,
        *,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Note:
        with self.locks.hold(note_id):
            note = self._load_for(actor, note_id, audit_action)
            self._authorize(actor, note, action, audit_action, reason)
            if expected_version is not None and int(expected_version) != note.version:
                self._audit(actor, audit_action, note_id=note.id, success=False, denial_reason="concurrency_conflict")
                raise ConcurrencyConflict(note.id, expected=int(expected_version), actual=note.version)

            after, prev_vals, new_vals = fn(note)
            after = after.model_copy(update={"version": note.version + 1, "updated_at": float(self.clock())})
            try:
                after = Note.model_validate(after.model_dump())
            except PydanticValidationError as e:
                raise _from_pydantic(e) from e
            self._commit(actor, audit_action, after, expected_version=note.version)
            self._audit(actor, audit_action, note_id=note.id, previous_values=prev_vals, new_values=new_vals)
            return after

    def _commit(self, actor: Actor, audit_action: AuditAction, note: Note, *, expected_version: int) -> None:
        try:
            with self._session() as conn:
                self._update(conn, note, expected_version=expected_version)
        except (ConcurrencyConflict, StorageFailure) as e:
            self._audit(actor, audit_action, note_id=note.id, success=False, denial_reason=e.code)
            if self.logger:
                self.logger.warning(f"Note {note.id} {audit_action.value} failed: {e.code}")
            raise

    # ---- create / read ----
    def create(
        self,
        actor: Actor,
        *,
        client_id: str,
        body: str,
        title: Optional[str] = None,
        session_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        category_id: Optional[str] = None,
        access_level: Any = AccessLevel.private,
        privacy_settings: Any = None,
        encrypted: bool = False,
    ) -> Note:
        if actor.role not in CREATOR_ROLES:
            raise AccessDenied(DenialReason.not_authorized.value, action="create")
        if not str(client_id or "").strip():
            raise ValidationError("client_id", "required")
        if not isinstance(body, str):
            raise ValidationError("body", "must be a string")
        clean_tags = normalize_tags(tags)
        now = float(self.clock())
        try:
            note = Note(
                owner_id=actor.user_id,
                client_id=str(client_id).strip(),
                session_id=session_id,
                org_id=actor.org_id,
                team_id=actor.team_ids[0] if actor.team_ids else None,
                title=title,
                body=body,
                tags=clean_tags,
                category_id=category_id,
                access_level=AccessLevel(access_level),
                privacy_settings=PrivacySettings.model_validate(privacy_settings or {}),
                encrypted=bool(encrypted),
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise _from_pydantic(e) from e
        except ValueError as e:
            raise ValidationError("access_level", str(e)) from e

        with self._session() as conn:
            self._insert(conn, note)
        if self.tags is not None and clean_tags:
            self.tags.increment(clean_tags)
        if self.logger:
            self.logger.info(f"Note created id={note.id} owner={note.owner_id}")
        return note

    def _read_as(self, actor: Actor, note_id: str, action: NoteAction, audit_action: AuditAction, reason: Optional[str]) -> Note:
        with self.locks.hold(note_id):
            note = self._load_for(actor, note_id, audit_action)
            self._authorize(actor, note, action, audit_action, reason)
            now = float(self.clock())
            bumped = note.model_copy(update={"access_count": note.access_count + 1, "last_accessed_at": now})
            # Counters are not content: version stays the same.
            self._commit(actor, audit_action, bumped, expected_version=note.version)
            self._audit(actor, audit_action, note_id=note.id, details={"access_reason": reason} if reason else None)
            return bumped

    def get(self, actor: Actor, note_id: str, *, reason: Optional[str] = None) -> Note:
        return self._read_as(actor, note_id, NoteAction.view, AuditAction.view, reason)

    def export_one(self, actor: Actor, note_id: str, *, reason: Optional[str] = None) -> Note:
        return self._read_as(actor, note_id, NoteAction.export, AuditAction.export, reason)

    # ---- content ----
    def update(
        self,
        actor: Actor,
        note_id: str,
        patch: Any,
        *,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Note:
        try:
            p = patch if isinstance(patch, NotePatch) else NotePatch.model_validate(patch or {})
        except PydanticValidationError as e:
            raise _from_pydantic(e) from e
        changes = p.changes()
        if not changes:
            raise ValidationError("patch", "no changes")
        if "tags" in changes:
            changes["tags"] = normalize_tags(changes["tags"])
        added: List[str] = []
        removed: List[str] = []

        def fn(note: Note):
            prev = {k: getattr(note, k) for k in changes}
            if "tags" in changes:
                added.extend(t for t in changes["tags"] if t not in note.tags)
                removed.extend(t for t in note.tags if t not in changes["tags"])
            return note.model_copy(update=changes), prev, dict(changes)

        out = self._mutate(actor, note_id, NoteAction.modify, AuditAction.modify, fn, reason=reason, expected_version=expected_version)
        self._retag(added, removed)
        return out

    def add_tags(self, actor: Actor, note_id: str, tags: Iterable[str]) -> Note:
        new_tags = normalize_tags(tags)
        if not new_tags:
            raise ValidationError("tags", "required")
        added: List[str] = []

        def fn(note: Note):
            added.extend(t for t in new_tags if t not in note.tags)
            merged = list(note.tags) + added
            return note.model_copy(update={"tags": merged}), {"tags": list(note.tags)}, {"tags": merged}

        out = self._mutate(actor, note_id, NoteAction.modify, AuditAction.tag_add, fn)
        self._retag(added, [])
        return out

    def remove_tags(self, actor: Actor, note_id: str, tags: Iterable[str]) -> Note:
        drop = normalize_tags(tags)
        if not drop:
            raise ValidationError("tags", "required")
        removed: List[str] = []

        def fn(note: Note):
            removed.extend(t for t in note.tags if t in drop)
            kept = [t for t in note.tags if t not in drop]
            return note.model_copy(update={"tags": kept}), {"tags": list(note.tags)}, {"tags": kept}

        out = self._mutate(actor, note_id, NoteAction.modify, AuditAction.tag_remove, fn)
        self._retag([], removed)
        return out

    def _retag(self, added: List[str], removed: List[str]) -> None:
        if self.tags is None:
            return
        if added:
            self.tags.increment(added)
        if removed:
            self.tags.decrement(removed)

    # ---- sharing ----
    def share(self, actor: Actor, note_id: str, user_ids: Iterable[str]) -> Note:
        users = [str(u).strip() for u in (user_ids or []) if str(u).strip()]
        if not users:
            raise ValidationError("user_ids", "required")

        def fn(note: Note):
            new_users = sorted({u for u in users if u != note.owner_id} - set(note.shared_with))
            merged = set(note.shared_with) | set(new_users)
            return (
                note.model_copy(update={"shared_with": merged}),
                {"shared_with": sorted(note.shared_with)},
                {"shared_with": sorted(merged), "added": new_users},
            )

        return self._mutate(actor, note_id, NoteAction.share, AuditAction.share, fn)

    def unshare(self, actor: Actor, note_id: str, user_ids: Iterable[str]) -> Note:
        users = {str(u).strip() for u in (user_ids or []) if str(u).strip()}
        if not users:
            raise ValidationError("user_ids", "required")

        def fn(note: Note):
            kept = set(note.shared_with) - users
            return note.model_copy(update={"shared_with": kept}), {"shared_with": sorted(note.shared_with)}, {"shared_with": sorted(kept)}

        return self._mutate(actor, note_id, NoteAction.unshare, AuditAction.unshare, fn)

    # ---- lifecycle ----
    def archive(self, actor: Actor, note_id: str, *, archive_reason: str = "") -> Note:
        def fn(note: Note):
            prev = {"is_archived": note.is_archived, "archive_reason": note.archive_reason}
            if note.is_archived:
                return note, prev, dict(prev)
            upd = {
                "is_archived": True,
                "archive_reason": str(archive_reason or "") or None,
                "archived_at": float(self.clock()),
                "archived_by": actor.user_id,
            }
            return note.model_copy(update=upd), prev, {"is_archived": True, "archive_reason": upd["archive_reason"]}

        return self._mutate(actor, note_id, NoteAction.archive, AuditAction.archive, fn)

    def restore(self, actor: Actor, note_id: str) -> Note:
        def fn(note: Note):
            prev = {"is_archived": note.is_archived, "archive_reason": note.archive_reason}
            upd = {"is_archived": False, "archive_reason": None, "archived_at": None, "archived_by": None}
            return note.model_copy(update=upd), prev, {"is_archived": False, "archive_reason": None}

        return self._mutate(actor, note_id, NoteAction.restore, AuditAction.restore, fn)

    def change_privacy(
        self,
        actor: Actor,
        note_id: str,
        *,
        access_level: Any = None,
        privacy_settings: Optional[Dict[str, Any]] = None,
    ) -> Note:
        if access_level is None and not privacy_settings:
            raise ValidationError("privacy", "no changes")
        try:
            level = AccessLevel(access_level) if access_level is not None else None
        except ValueError as e:
            raise ValidationError("access_level", "unknown access level") from e
        settings_patch = dict(privacy_settings.model_dump() if isinstance(privacy_settings, PrivacySettings) else (privacy_settings or {}))
        unknown = set(settings_patch) - set(PrivacySettings.model_fields)
        if unknown:
            raise ValidationError("privacy_settings", f"unknown setting(s): {', '.join(sorted(unknown))}")
        try:
            PrivacySettings.model_validate(settings_patch)
        except PydanticValidationError as e:
            raise _from_pydantic(e) from e

        def fn(note: Note):
            merged = PrivacySettings.model_validate({**note.privacy_settings.model_dump(), **settings_patch})
            upd: Dict[str, Any] = {"privacy_settings": merged}
            prev: Dict[str, Any] = {"privacy_settings": note.privacy_settings.model_dump()}
            new: Dict[str, Any] = {"privacy_settings": merged.model_dump()}
            if level is not None:
                upd["access_level"] = level
                prev["access_level"] = note.access_level.value
                new["access_level"] = level.value
            if not merged.allow_sharing and note.shared_with:
                upd["shared_with"] = set()
                prev["shared_with"] = sorted(note.shared_with)
                new["shared_with"] = []
            return note.model_copy(update=upd), prev, new

        return self._mutate(actor, note_id, NoteAction.privacy_change, AuditAction.privacy_change, fn)

    def assign_category(self, actor: Actor, note_id: str, category_id: Optional[str]) -> Note:
        cat = str(category_id).strip() if category_id is not None else None

        def fn(note: Note):
            return note.model_copy(update={"category_id": cat or None}), {"category_id": note.category_id}, {"category_id": cat or None}

        return self._mutate(actor, note_id, NoteAction.category_assign, AuditAction.category_assign, fn)

    def set_legal_hold(self, actor: Actor, note_id: str, hold: bool) -> Note:
        if actor.role not in {Role.admin, Role.system}:
            raise AccessDenied(DenialReason.not_authorized.value, note_id=str(note_id), action="legal_hold")

        def fn(note: Note):
            return note.model_copy(update={"legal_hold": bool(hold)}), {"legal_hold": note.legal_hold}, {"legal_hold": bool(hold)}

        return self._mutate(actor, note_id, NoteAction.modify, AuditAction.modify, fn)

    def delete(self, actor: Actor, note_id: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        with self.locks.hold(note_id):
            note = self._load_for(actor, note_id, AuditAction.delete)
            self._authorize(actor, note, NoteAction.delete, AuditAction.delete, None)
            try:
                with self._session() as conn:
                    cur = conn.execute("DELETE FROM notes WHERE id=? AND version=?", (note.id, note.version))
                    if cur.rowcount == 0:
                        raise ConcurrencyConflict(note.id)
            except (ConcurrencyConflict, StorageFailure) as e:
                self._audit(actor, AuditAction.delete, note_id=note.id, success=False, denial_reason=e.code)
                raise
            self._audit(actor, AuditAction.delete, note_id=note.id, previous_values=note.summary(), details=details)
        self._retag([], list(note.tags))

    # ---- unguarded reads (internal listing, no audit) ----
    def load(self, note_id: str) -> Optional[Note]:
        with self._session() as conn:
            return self._select(conn, note_id)

    def scan(
        self,
        *,
        client_id: Optional[str] = None,
        session_id: Optional[str] = None,
        category_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        created_from: Optional[float] = None,
        created_to: Optional[float] = None,
        include_archived: bool = True,
    ) -> List[Note]:
        where: List[str] = []
        params: List[Any] = []
        for col, val in (("client_id", client_id), ("session_id", session_id), ("category_id", category_id), ("owner_id", owner_id)):
            if val:
                where.append(f"{col} = ?")
                params.append(str(val))
        if created_from is not None:
            where.append("created_at >= ?")
            params.append(float(created_from))
        if created_to is not None:
            where.append("created_at <= ?")
            params.append(float(created_to))
        if not include_archived:
            where.append("is_archived = 0")
        sql = "SELECT json FROM notes"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, id ASC"
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._open(r["json"]) for r in rows]

    def ids_for_subject(self, subject_id: str) -> List[str]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT id FROM notes WHERE owner_id=? OR client_id=? ORDER BY created_at ASC, id ASC",
                (str(subject_id), str(subject_id)),
            ).fetchall()
        return [str(r["id"]) for r in rows]

    def count(self) -> int:
        with self._session() as conn:
            return int(conn.execute("SELECT COUNT(1) FROM notes").fetchone()[0])

