from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConsentType(str, Enum):
    data_collection = "data_collection"
    data_processing = "data_processing"
    data_sharing = "data_sharing"
    analytics = "analytics"
    export = "export"


class ConsentStatus(str, Enum):
    granted = "granted"
    denied = "denied"
    unknown = "unknown"


class ConsentRecord(BaseModel):
    """
    One entry of the consent ledger. Records are never updated: a withdrawal
    is a new record with withdrawn_at set.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subject_id: str = Field(min_length=1, max_length=128)
    consent_type: ConsentType
    granted: bool = False
    timestamp: float = Field(default_factory=lambda: time.time())
    method: str = Field(default="explicit", max_length=40)
    version: str = Field(default="1.0", max_length=20)
    withdrawn_at: Optional[float] = None
    reason: str = Field(default="", max_length=500)
    evidence: str = Field(default="", max_length=200)

    @property
    def is_active_grant(self) -> bool:
        return bool(self.granted) and self.withdrawn_at is None
