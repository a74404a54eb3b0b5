from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AccessLevel(str, Enum):
    private = "private"
    supervisor = "supervisor"
    team = "team"
    organization = "organization"


class PrivacySettings(BaseModel):
    """
    Per-note privacy switches. Every default is the restrictive one.
    """

    model_config = ConfigDict(extra="forbid")

    allow_export: bool = False
    allow_sharing: bool = False
    require_reason_for_access: bool = False
    sensitive_content: bool = False
    supervision_required: bool = False
    auto_delete_after_days: Optional[int] = Field(default=None, ge=1, le=36500)
    retention_period_days: Optional[int] = Field(default=None, ge=1, le=36500)


class Note(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str = Field(min_length=1, max_length=128)
    client_id: str = Field(min_length=1, max_length=128)
    session_id: Optional[str] = None
    org_id: Optional[str] = None
    team_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=200)
    body: str = ""
    tags: List[str] = Field(default_factory=list)
    category_id: Optional[str] = None
    access_level: AccessLevel = AccessLevel.private
    privacy_settings: PrivacySettings = Field(default_factory=PrivacySettings)
    shared_with: Set[str] = Field(default_factory=set)
    encrypted: bool = False
    access_count: int = 0
    last_accessed_at: Optional[float] = None
    is_archived: bool = False
    archive_reason: Optional[str] = None
    archived_at: Optional[float] = None
    archived_by: Optional[str] = None
    legal_hold: bool = False
    version: int = 1
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())

    @model_validator(mode="after")
    def _sharing_off_means_no_shares(self) -> "Note":
        if not self.privacy_settings.allow_sharing and self.shared_with:
            self.shared_with = set()
        return self

    def summary(self) -> Dict[str, Any]:
        """Audit-safe description of the note (no body)."""
        return {
            "owner_id": self.owner_id,
            "client_id": self.client_id,
            "access_level": self.access_level.value,
            "is_archived": self.is_archived,
            "version": self.version,
        }

    def export_dict(self) -> Dict[str, Any]:
        d = self.model_dump(mode="json")
        d["shared_with"] = sorted(self.shared_with)
        return d


class NotePatch(BaseModel):
    """
    Content changes accepted by update_note(). None means "leave as is".
    """

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, max_length=200)
    body: Optional[str] = None
    tags: Optional[List[str]] = None
    session_id: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


# Columns written to the export formats, in order.
EXPORT_FIELDS: List[str] = [
    "id",
    "owner_id",
    "client_id",
    "session_id",
    "title",
    "body",
    "tags",
    "category_id",
    "access_level",
    "encrypted",
    "is_archived",
    "created_at",
    "updated_at",
]
