from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from notevault.core.audit.redaction import redact_value


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class NoteVaultError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact_value(self.context or {}),
        }


# ---- Engine error taxonomy ----
class AccessDenied(NoteVaultError):
    """Expected denial. Denials on an existing note are audited before they are raised."""

    def __init__(self, reason: str, user_message: str = "Access denied.", **ctx: Any):
        ctx.setdefault("reason", reason)
        super().__init__("access_denied", user_message, severity=Severity.WARN, recoverable=True, context=ctx)
        self.reason = str(reason)


class ValidationError(NoteVaultError):
    def __init__(self, field_name: str, reason: str, user_message: str = "Invalid request.", **ctx: Any):
        ctx.setdefault("field", field_name)
        ctx.setdefault("reason", reason)
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)
        self.field = str(field_name)
        self.reason = str(reason)


class NotFound(NoteVaultError):
    def __init__(self, note_id: str, user_message: str = "Record not found.", **ctx: Any):
        ctx.setdefault("id", note_id)
        super().__init__("not_found", user_message, severity=Severity.WARN, recoverable=False, context=ctx)
        self.note_id = str(note_id)


class InvalidTransition(NoteVaultError):
    def __init__(self, current: str, requested: str, user_message: str = "Invalid state transition.", **ctx: Any):
        ctx.setdefault("current", current)
        ctx.setdefault("requested", requested)
        super().__init__("invalid_transition", user_message, severity=Severity.WARN, recoverable=False, context=ctx)
        self.current = str(current)
        self.requested = str(requested)


class InvalidSort(NoteVaultError):
    def __init__(self, sort_field: str, user_message: str = "Sort field is not valid for this query.", **ctx: Any):
        ctx.setdefault("field", sort_field)
        super().__init__("invalid_sort", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class NotGranted(NoteVaultError):
    def __init__(self, subject_id: str, consent_type: str, user_message: str = "No active consent to withdraw.", **ctx: Any):
        ctx.setdefault("subject_id", subject_id)
        ctx.setdefault("consent_type", consent_type)
        super().__init__("not_granted", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ConcurrencyConflict(NoteVaultError):
    def __init__(self, note_id: str, user_message: str = "The note was changed concurrently; retry.", **ctx: Any):
        ctx.setdefault("id", note_id)
        super().__init__("concurrency_conflict", user_message, severity=Severity.WARN, recoverable=True, context=ctx)
        self.note_id = str(note_id)


class StorageFailure(NoteVaultError):
    def __init__(self, user_message: str = "Storage error.", **ctx: Any):
        super().__init__("storage_failure", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)
