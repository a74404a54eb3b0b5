from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    coach = "coach"
    supervisor = "supervisor"
    admin = "admin"
    client = "client"
    system = "system"


class NoteAction(str, Enum):
    view = "view"
    export = "export"
    modify = "modify"
    delete = "delete"
    archive = "archive"
    restore = "restore"
    share = "share"
    unshare = "unshare"
    privacy_change = "privacy_change"
    category_assign = "category_assign"


class DenialReason(str, Enum):
    export_disabled = "export_disabled"
    sharing_disabled = "sharing_disabled"
    reason_required = "reason_required"
    insufficient_access_level = "insufficient_access_level"
    consent_required = "consent_required"
    not_authorized = "not_authorized"
    legal_hold = "legal_hold"


class Actor(BaseModel):
    """
    An already-authenticated caller. Identity and membership come from outside the engine.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str = Field(min_length=1, max_length=128)
    role: Role
    org_id: Optional[str] = None
    team_ids: List[str] = Field(default_factory=list)

    @field_validator("user_id")
    @classmethod
    def _strip(cls, v: str) -> str:
        s = str(v).strip()
        if not s:
            raise ValueError("user_id must not be blank")
        return s

    @classmethod
    def system(cls, user_id: str = "system") -> "Actor":
        return cls(user_id=user_id, role=Role.system)


class Decision(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True, reason=None)

    @classmethod
    def deny(cls, reason: DenialReason) -> "Decision":
        return cls(allowed=False, reason=reason.value)
