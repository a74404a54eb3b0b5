from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    db_path: str = "runtime/notevault.sqlite"
    journal_mode: str = "WAL"

    @field_validator("journal_mode")
    @classmethod
    def _journal_mode(cls, v: str) -> str:
        mode = str(v or "").strip().upper()
        if mode not in {"WAL", "DELETE", "TRUNCATE", "MEMORY"}:
            raise ValueError("journal_mode must be WAL, DELETE, TRUNCATE or MEMORY")
        return mode


class BulkConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_workers: int = Field(default=4, ge=1, le=64)
    max_targets: int = Field(default=5000, ge=1, le=100000)


class RetentionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    enabled: bool = False
    interval_seconds: float = Field(default=3600.0, ge=1.0)


class SearchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    default_page_size: int = Field(default=20, ge=1, le=500)
    max_page_size: int = Field(default=100, ge=1, le=1000)


class AuditConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    default_page_size: int = Field(default=50, ge=1, le=1000)
    verify_on_startup: bool = True


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    log_dir: str = "logs"
    level: str = "INFO"


class EngineConfigFile(BaseModel):
    """
    config/engine.json schema.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1, le=10)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    bulk: BulkConfig = Field(default_factory=BulkConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def default_engine_config_dict() -> Dict[str, Any]:
    return EngineConfigFile().model_dump()
