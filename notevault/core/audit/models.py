from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AuditAction(str, Enum):
    view = "view"
    export = "export"
    modify = "modify"
    delete = "delete"
    share = "share"
    unshare = "unshare"
    archive = "archive"
    restore = "restore"
    privacy_change = "privacy_change"
    category_assign = "category_assign"
    tag_add = "tag_add"
    tag_remove = "tag_remove"
    bulk_started = "bulk_started"
    bulk_completed = "bulk_completed"
    retention_pass = "retention_pass"
    dsar_fulfilled = "dsar_fulfilled"
    consent_granted = "consent_granted"
    consent_withdrawn = "consent_withdrawn"


class AuditEntry(BaseModel):
    """
    One access or mutation attempt, success or denial.
    Immutable once recorded; prev_hash/hash are filled in by AuditLog.record().
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    note_id: Optional[str] = None
    actor_id: str = Field(min_length=1, max_length=128)
    actor_role: str = Field(min_length=1, max_length=32)
    action: AuditAction
    timestamp: float = Field(default_factory=lambda: time.time())
    success: bool
    denial_reason: Optional[str] = None
    previous_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None

    @model_validator(mode="after")
    def _denial_reason_iff_denied(self) -> "AuditEntry":
        reason = (self.denial_reason or "").strip()
        if not self.success and not reason:
            raise ValueError("denied entries require a non-empty denial_reason")
        if self.success and self.denial_reason is not None:
            raise ValueError("successful entries must not carry a denial_reason")
        return self


class AuditPage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entries: List[AuditEntry] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50
    total_pages: int = 0


class IntegrityReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    checked: int
    broken_at: Optional[str] = None
    message: str = ""
    head_hash: Optional[str] = None
