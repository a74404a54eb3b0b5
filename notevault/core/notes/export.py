from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from notevault.core.access.models import Actor
from notevault.core.errors import AccessDenied, NotFound, ValidationError
from notevault.core.notes.models import EXPORT_FIELDS, Note


class ExportFormat(str, Enum):
    json = "json"
    csv = "csv"


CONTENT_TYPES = {
    ExportFormat.json: "application/json",
    ExportFormat.csv: "text/csv",
}


@dataclass
class ExportResult:
    data: bytes
    format: ExportFormat
    exported: List[str] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.format]


def _row(note: Note) -> Dict[str, Any]:
    d = note.export_dict()
    return {k: d.get(k) for k in EXPORT_FIELDS}


def render_json(notes: List[Note], skipped: List[Dict[str, str]]) -> bytes:
    doc = {"notes": [_row(n) for n in notes], "skipped": list(skipped)}
    return json.dumps(doc, ensure_ascii=False, indent=2, sort_keys=True).encode("utf-8")


def render_csv(notes: List[Note]) -> bytes:
    buf = io.StringIO()
    w = csv.DictWriter(buf, fieldnames=EXPORT_FIELDS, extrasaction="ignore")
    w.writeheader()
    for n in notes:
        row = _row(n)
        row["tags"] = ";".join(row.get("tags") or [])
        w.writerow(row)
    return buf.getvalue().encode("utf-8")


def export_notes(
    repo: Any,
    actor: Actor,
    note_ids: Iterable[str],
    fmt: Any = ExportFormat.json,
    *,
    reason: Optional[str] = None,
) -> ExportResult:
    """
    Export the notes the actor may export; everything else is reported in `skipped`.
    Each note goes through the repository, so every attempt is audited and
    successful exports bump the access counters.
    """
    try:
        f = ExportFormat(fmt)
    except ValueError as e:
        raise ValidationError("format", "must be json or csv") from e

    seen: List[str] = []
    for nid in note_ids or []:
        s = str(nid)
        if s not in seen:
            seen.append(s)

    notes: List[Note] = []
    skipped: List[Dict[str, str]] = []
    for nid in seen:
        try:
            notes.append(repo.export_one(actor, nid, reason=reason))
        except AccessDenied as e:
            skipped.append({"note_id": nid, "reason": e.reason})
        except NotFound:
            skipped.append({"note_id": nid, "reason": "not_found"})

    data = render_json(notes, skipped) if f == ExportFormat.json else render_csv(notes)
    return ExportResult(data=data, format=f, exported=[n.id for n in notes], skipped=skipped)
