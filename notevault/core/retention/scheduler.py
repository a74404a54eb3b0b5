from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional

from notevault.core.access.models import Actor
from notevault.core.audit.models import AuditAction
from notevault.core.errors import NoteVaultError
from notevault.core.notes.models import Note

DAY_SECONDS = 86400.0

RETENTION_ARCHIVE_REASON = "retention_expired"


def _age_reached(note: Note, days: Optional[int], now: float) -> bool:
    return days is not None and (now - float(note.created_at)) >= float(days) * DAY_SECONDS


class RetentionScheduler:
    """
    Flags (archives) or hard-deletes notes whose retention thresholds have passed.

    Deletion beats flagging. Notes under legal hold are skipped. A failure on
    one note is counted and the pass moves on.
    """

    def __init__(
        self,
        *,
        repository: Any,
        audit: Any,
        interval_seconds: float = 3600.0,
        clock: Optional[Callable[[], float]] = None,
        logger: Any = None,
    ):
        self.repository = repository
        self.audit = audit
        self.interval_seconds = float(interval_seconds)
        self.clock = clock or time.time
        self.logger = logger
        self.actor = Actor.system("retention")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pass_lock = threading.Lock()
        self.last_result: Optional[Dict[str, int]] = None

    def run_retention_pass(self, now: Optional[float] = None) -> Dict[str, int]:
        ts = float(now if now is not None else self.clock())
        out = {"flagged": 0, "deleted": 0, "skipped": 0, "errors": 0}
        with self._pass_lock:
            for note in self.repository.scan(include_archived=True):
                ps = note.privacy_settings
                delete_due = _age_reached(note, ps.auto_delete_after_days, ts)
                flag_due = not note.is_archived and _age_reached(note, ps.retention_period_days, ts)
                if not (delete_due or flag_due):
                    continue
                if note.legal_hold:
                    out["skipped"] += 1
                    continue
                try:
                    if delete_due:
                        self.repository.delete(self.actor, note.id, details={"retention": "auto_delete"})
                        out["deleted"] += 1
                    else:
                        self.repository.archive(self.actor, note.id, archive_reason=RETENTION_ARCHIVE_REASON)
                        out["flagged"] += 1
                except NoteVaultError as e:
                    out["errors"] += 1
                    if self.logger:
                        self.logger.warning(f"Retention failed for note {note.id}: {e.code}")

            self.audit.record_event(
                actor_id=self.actor.user_id,
                actor_role=self.actor.role.value,
                action=AuditAction.retention_pass,
                details=dict(out, ran_at=ts),
            )
        self.last_result = dict(out)
        if self.logger:
            self.logger.info(f"Retention pass: {out}")
        return out

    # ---- background loop ----
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retention-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_retention_pass()
            except NoteVaultError as e:
                if self.logger:
                    self.logger.error(f"Retention pass aborted: {e.code}")
