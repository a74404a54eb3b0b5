from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from notevault.core.access.evaluator import AccessControlEvaluator
from notevault.core.access.models import Actor, DenialReason, Role
from notevault.core.audit.models import AuditPage, IntegrityReport
from notevault.core.audit.store import AuditLog
from notevault.core.bulk.executor import BulkMutationExecutor
from notevault.core.bulk.models import BulkOperation
from notevault.core.config.manager import ConfigManager
from notevault.core.config.models import EngineConfigFile
from notevault.core.config.paths import ConfigFsPaths
from notevault.core.consent.models import ConsentRecord, ConsentStatus
from notevault.core.consent.store import ConsentStore
from notevault.core.crypto import ContentCipher
from notevault.core.dsar.tracker import DataSubjectRequest, DataSubjectRequestTracker
from notevault.core.errors import AccessDenied, NotFound
from notevault.core.logger import setup_logging
from notevault.core.notes.export import ExportResult, export_notes
from notevault.core.notes.locks import NoteLockRegistry
from notevault.core.notes.models import AccessLevel, Note
from notevault.core.notes.repository import CREATOR_ROLES, NotesRepository
from notevault.core.retention.scheduler import RetentionScheduler
from notevault.core.search.engine import SavedSearch, SavedSearchStore, SearchEngine, SearchPage
from notevault.core.tags.index import TagIndex, TagRecord


class Engine:
    """
    External interface of the note vault.

    Wires the stores together from config/engine.json under `root` and exposes
    every operation callers need. Transport (HTTP, RPC) lives outside.
    """

    def __init__(
        self,
        *,
        root: str = ".",
        config: Optional[EngineConfigFile] = None,
        cipher: Optional[ContentCipher] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Any = None,
    ):
        self.fs = ConfigFsPaths(root=str(root))
        self.config_manager = ConfigManager(fs=self.fs, logger=logger)
        self.cfg = config or self.config_manager.load_all()
        self.logger = logger
        self.clock = clock or time.time

        db_path = self.fs.resolve(self.cfg.storage.db_path)
        jm = self.cfg.storage.journal_mode
        self.locks = NoteLockRegistry()
        self.evaluator = AccessControlEvaluator()
        self.audit = AuditLog(
            db_path=db_path,
            journal_mode=jm,
            default_page_size=self.cfg.audit.default_page_size,
            clock=self.clock,
            logger=logger,
        )
        self.tags = TagIndex(db_path=db_path, journal_mode=jm, clock=self.clock, logger=logger)
        self.consent = ConsentStore(db_path=db_path, journal_mode=jm, audit=self.audit, clock=self.clock, logger=logger)
        self.notes = NotesRepository(
            db_path=db_path,
            journal_mode=jm,
            audit=self.audit,
            evaluator=self.evaluator,
            locks=self.locks,
            tags=self.tags,
            cipher=cipher,
            clock=self.clock,
            logger=logger,
        )
        self.searcher = SearchEngine(
            repository=self.notes,
            evaluator=self.evaluator,
            default_page_size=self.cfg.search.default_page_size,
            max_page_size=self.cfg.search.max_page_size,
            logger=logger,
        )
        self.saved_searches = SavedSearchStore(db_path=db_path, journal_mode=jm, clock=self.clock, logger=logger)
        self.bulk = BulkMutationExecutor(
            db_path=db_path,
            journal_mode=jm,
            repository=self.notes,
            audit=self.audit,
            max_workers=self.cfg.bulk.max_workers,
            max_targets=self.cfg.bulk.max_targets,
            clock=self.clock,
            logger=logger,
        )
        self.retention = RetentionScheduler(
            repository=self.notes,
            audit=self.audit,
            interval_seconds=self.cfg.retention.interval_seconds,
            clock=self.clock,
            logger=logger,
        )
        self.requests = DataSubjectRequestTracker(
            db_path=db_path,
            journal_mode=jm,
            repository=self.notes,
            consent=self.consent,
            audit=self.audit,
            clock=self.clock,
            logger=logger,
        )

        if self.cfg.audit.verify_on_startup:
            rep = self.audit.verify_integrity()
            if not rep.ok and self.logger:
                self.logger.error(f"Audit chain integrity check failed at {rep.broken_at}: {rep.message}")

    @classmethod
    def from_root(cls, root: str = ".", *, cipher: Optional[ContentCipher] = None, clock: Optional[Callable[[], float]] = None) -> "Engine":
        """Load config/engine.json, set up logging from it, and build the engine."""
        fs = ConfigFsPaths(root=str(root))
        cfg = ConfigManager(fs=fs).load_all()
        logger = setup_logging(fs.resolve(cfg.logging.log_dir), cfg.logging.level)
        return cls(root=root, config=cfg, cipher=cipher, clock=clock, logger=logger)

    # ---- lifecycle ----
    def start(self) -> None:
        if self.cfg.retention.enabled:
            self.retention.start()

    def close(self) -> None:
        self.retention.stop()

    # ---- notes ----
    def create_note(
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
        privacy_settings: Optional[Dict[str, Any]] = None,
        encrypted: bool = False,
    ) -> Note:
        return self.notes.create(
            actor,
            client_id=client_id,
            body=body,
            title=title,
            session_id=session_id,
            tags=tags,
            category_id=category_id,
            access_level=access_level,
            privacy_settings=privacy_settings,
            encrypted=encrypted,
        )

    def read_note(self, actor: Actor, note_id: str, *, reason: Optional[str] = None) -> Note:
        return self.notes.get(actor, note_id, reason=reason)

    def update_note(self, actor: Actor, note_id: str, patch: Any, *, expected_version: Optional[int] = None) -> Note:
        return self.notes.update(actor, note_id, patch, expected_version=expected_version)

    def delete_note(self, actor: Actor, note_id: str) -> None:
        self.notes.delete(actor, note_id)

    def share_note(self, actor: Actor, note_id: str, user_ids: Iterable[str]) -> Note:
        return self.notes.share(actor, note_id, user_ids)

    def unshare_note(self, actor: Actor, note_id: str, user_ids: Iterable[str]) -> Note:
        return self.notes.unshare(actor, note_id, user_ids)

    def archive_note(self, actor: Actor, note_id: str, *, reason: str = "") -> Note:
        return self.notes.archive(actor, note_id, archive_reason=reason)

    def restore_note(self, actor: Actor, note_id: str) -> Note:
        return self.notes.restore(actor, note_id)

    def change_privacy(
        self,
        actor: Actor,
        note_id: str,
        *,
        access_level: Any = None,
        privacy_settings: Optional[Dict[str, Any]] = None,
    ) -> Note:
        return self.notes.change_privacy(actor, note_id, access_level=access_level, privacy_settings=privacy_settings)

    def assign_category(self, actor: Actor, note_id: str, category_id: Optional[str]) -> Note:
        return self.notes.assign_category(actor, note_id, category_id)

    def add_tags(self, actor: Actor, note_id: str, tags: Iterable[str]) -> Note:
        return self.notes.add_tags(actor, note_id, tags)

    def remove_tags(self, actor: Actor, note_id: str, tags: Iterable[str]) -> Note:
        return self.notes.remove_tags(actor, note_id, tags)

    def set_legal_hold(self, actor: Actor, note_id: str, hold: bool) -> Note:
        return self.notes.set_legal_hold(actor, note_id, hold)

    def export_notes(self, actor: Actor, note_ids: Iterable[str], fmt: Any = "json", *, reason: Optional[str] = None) -> ExportResult:
        return export_notes(self.notes, actor, note_ids, fmt, reason=reason)

    # ---- search ----
    def search(
        self,
        actor: Actor,
        query: Any = None,
        sort: Any = None,
        page: int = 1,
        page_size: Optional[int] = None,
        *,
        reason: Optional[str] = None,
    ) -> SearchPage:
        return self.searcher.search(actor, query, sort, page, page_size, reason=reason)

    def save_search(self, actor: Actor, name: str, query: Any = None, sort: Any = None) -> SavedSearch:
        return self.saved_searches.save(actor, name, query, sort)

    def update_saved_search(self, actor: Actor, search_id: str, **changes: Any) -> SavedSearch:
        return self.saved_searches.update(actor, search_id, **changes)

    def list_saved_searches(self, actor: Actor) -> List[SavedSearch]:
        return self.saved_searches.list_for(actor)

    def delete_saved_search(self, actor: Actor, search_id: str) -> None:
        self.saved_searches.delete(actor, search_id)

    def run_saved_search(self, actor: Actor, search_id: str, page: int = 1, page_size: Optional[int] = None) -> SearchPage:
        ss = self.saved_searches.get(actor, search_id)
        return self.searcher.search(actor, ss.query, ss.sort, page, page_size)

    # ---- consent ----
    def record_consent(self, actor: Actor, subject_id: str, consent_type: Any, granted: bool = True, **context: Any) -> ConsentRecord:
        return self.consent.record_consent(subject_id, consent_type, granted, actor=actor, **context)

    def withdraw_consent(self, actor: Actor, subject_id: str, consent_type: Any, reason: str = "") -> ConsentRecord:
        return self.consent.withdraw(subject_id, consent_type, reason, actor=actor)

    def consent_status(self, subject_id: str, consent_type: Any) -> ConsentStatus:
        return self.consent.current_status(subject_id, consent_type)

    def consent_history(self, subject_id: str, consent_type: Any = None) -> List[ConsentRecord]:
        return self.consent.history(subject_id, consent_type)

    # ---- audit ----
    def query_audit(self, actor: Actor, **filters: Any) -> AuditPage:
        """
        Admins see everything; a note owner may read the trail of their own note.
        """
        if actor.role not in {Role.admin, Role.system}:
            note_id = filters.get("note_id")
            note = self.notes.load(note_id) if note_id else None
            if note is None or note.owner_id != actor.user_id:
                raise AccessDenied(DenialReason.not_authorized.value, note_id=note_id)
        return self.audit.query(**filters)

    def audit_statistics(self, actor: Actor, *, date_from: Optional[float] = None, date_to: Optional[float] = None) -> Dict[str, Any]:
        self._require_admin(actor)
        return self.audit.statistics(date_from=date_from, date_to=date_to)

    def verify_audit_integrity(self, actor: Actor) -> IntegrityReport:
        self._require_admin(actor)
        return self.audit.verify_integrity()

    # ---- bulk ----
    def submit_bulk_operation(
        self,
        actor: Actor,
        kind: Any,
        note_ids: Iterable[str],
        options: Any = None,
        *,
        execute: bool = True,
    ) -> str:
        op_id = self.bulk.submit(actor, kind, note_ids, options)
        if execute:
            self.bulk.execute(op_id)
        return op_id

    def execute_bulk_operation(self, actor: Actor, operation_id: str) -> BulkOperation:
        self._require_initiator(actor, self.bulk.get_status(operation_id))
        return self.bulk.execute(operation_id)

    def get_bulk_operation_status(self, actor: Actor, operation_id: str) -> BulkOperation:
        op = self.bulk.get_status(operation_id)
        self._require_initiator(actor, op)
        return op

    def list_bulk_operations(self, actor: Actor, *, limit: int = 100) -> List[BulkOperation]:
        initiator = None if actor.role in {Role.admin, Role.system} else actor.user_id
        return self.bulk.list_operations(initiator_id=initiator, limit=limit)

    # ---- data subject requests ----
    def submit_request(self, actor: Actor, subject_id: str, request_type: Any, details: str = "") -> DataSubjectRequest:
        return self.requests.submit(subject_id, request_type, details, submitted_by=actor)

    def update_request_status(self, actor: Actor, request_id: str, new_status: Any, *, note: str = "") -> DataSubjectRequest:
        return self.requests.update_status(request_id, new_status, actor, note=note)

    def list_requests(self, actor: Actor, *, subject_id: Optional[str] = None, status: Any = None) -> List[DataSubjectRequest]:
        if actor.role not in {Role.admin, Role.system}:
            if subject_id is not None and subject_id != actor.user_id:
                raise AccessDenied(DenialReason.not_authorized.value, subject_id=subject_id)
            subject_id = actor.user_id
        return self.requests.list_requests(subject_id=subject_id, status=status)

    # ---- retention ----
    def run_retention_pass(self, now: Optional[float] = None) -> Dict[str, int]:
        return self.retention.run_retention_pass(now)

    # ---- tags ----
    def list_tags(self, *, category: Optional[str] = None, group: Optional[str] = None) -> List[TagRecord]:
        return self.tags.list_tags(category=category, group=group)

    def register_tag(self, actor: Actor, name: str, description: str = "") -> TagRecord:
        """Add a custom tag to the vocabulary. Same roles as note authoring."""
        if actor.role not in CREATOR_ROLES and actor.role != Role.system:
            raise AccessDenied(DenialReason.not_authorized.value, action="register_tag")
        rec = self.tags.register_custom(name, description)
        if self.logger:
            self.logger.info(f"Custom tag registered name={rec.name} by={actor.user_id}")
        return rec

    def suggest_tags(self, prefix: str, *, limit: int = 10) -> List[str]:
        return self.tags.suggest(prefix, limit=limit)

    def tag_analytics(self) -> Dict[str, Any]:
        return self.tags.analytics()

    # ---- helpers ----
    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if actor.role not in {Role.admin, Role.system}:
            raise AccessDenied(DenialReason.not_authorized.value)

    @staticmethod
    def _require_initiator(actor: Actor, op: BulkOperation) -> None:
        if actor.role in {Role.admin, Role.system}:
            return
        if op.initiator.user_id != actor.user_id:
            raise NotFound(op.id)
