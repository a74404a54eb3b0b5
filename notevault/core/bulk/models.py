from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from notevault.core.access.models import Actor


class BulkKind(str, Enum):
    delete = "delete"
    tag_add = "tag_add"
    tag_remove = "tag_remove"
    archive = "archive"
    restore = "restore"
    privacy_change = "privacy_change"
    category_assign = "category_assign"


class BulkStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    partially_failed = "partially_failed"
    failed = "failed"


TERMINAL_STATUSES = {BulkStatus.completed, BulkStatus.partially_failed, BulkStatus.failed}


class BulkOptions(BaseModel):
    """
    Kind-specific payload. Only the fields relevant to the kind are read.
    """

    model_config = ConfigDict(extra="forbid")

    tags: List[str] = Field(default_factory=list)
    access_level: Optional[str] = None
    privacy_settings: Dict[str, Any] = Field(default_factory=dict)
    category_id: Optional[str] = None
    archive_reason: str = Field(default="", max_length=200)


class BulkItemResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    error: Optional[str] = None


class BulkOperation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: BulkKind
    note_ids: List[str] = Field(default_factory=list)
    initiator: Actor
    options: BulkOptions = Field(default_factory=BulkOptions)
    status: BulkStatus = BulkStatus.pending
    results: Dict[str, BulkItemResult] = Field(default_factory=dict)
    success_count: int = 0
    failure_count: int = 0
    created_at: float = Field(default_factory=lambda: time.time())
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def unique_targets(self) -> List[str]:
        """Targets with duplicates removed, first occurrence wins."""
        seen: Dict[str, None] = {}
        for nid in self.note_ids:
            seen.setdefault(str(nid), None)
        return list(seen)
