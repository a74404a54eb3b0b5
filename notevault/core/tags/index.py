from __future__ import annotations

import re
import sqlite3
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from notevault.core.errors import ValidationError
from notevault.core.storage.sqlite import SqliteStore


MAX_TAG_LENGTH = 50

PREDEFINED_TAGS: Dict[str, List[str]] = {
    "goals": ["goal-setting", "career-goals", "personal-goals", "life-balance"],
    "challenges": ["obstacle", "limiting-belief", "skill-gap", "fear", "procrastination"],
    "breakthroughs": ["breakthrough", "aha-moment", "mindset-shift", "confidence-boost", "clarity"],
    "action-items": ["action-items", "homework", "follow-up", "accountability", "next-steps"],
    "session": ["session-summary", "progress-check", "strategy", "tools-techniques"],
}

_SEP_RE = re.compile(r"[\s_]+")
_BAD_RE = re.compile(r"[^a-z0-9-]")
_DASHES_RE = re.compile(r"-{2,}")


class TagCategory(str, Enum):
    predefined = "predefined"
    custom = "custom"


class TagRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=MAX_TAG_LENGTH)
    category: TagCategory = TagCategory.custom
    group: str = "custom"
    description: str = Field(default="", max_length=200)
    usage_count: int = Field(default=0, ge=0)
    created_at: float = Field(default_factory=lambda: time.time())


def normalize_tag(name: Any) -> str:
    """
    "  Career Goals " -> "career-goals". Raises ValidationError when nothing is left.
    """
    s = _SEP_RE.sub("-", str(name or "").strip().lower())
    s = _DASHES_RE.sub("-", _BAD_RE.sub("", s)).strip("-")
    if not s:
        raise ValidationError("tags", "empty tag")
    if len(s) > MAX_TAG_LENGTH:
        raise ValidationError("tags", f"tag longer than {MAX_TAG_LENGTH} characters")
    return s


def normalize_tags(names: Optional[Iterable[Any]]) -> List[str]:
    """Normalize and de-duplicate, keeping first occurrence order."""
    out: List[str] = []
    for n in names or []:
        t = normalize_tag(n)
        if t not in out:
            out.append(t)
    return out


class TagIndex(SqliteStore):
    """
    Engine-owned tag vocabulary: the predefined taxonomy plus custom tags, with usage counts.
    """

    def __init__(
        self,
        *,
        db_path: str,
        journal_mode: str = "WAL",
        clock: Optional[Callable[[], float]] = None,
        logger: Any = None,
    ):
        self.clock = clock or time.time
        super().__init__(db_path=db_path, journal_mode=journal_mode, logger=logger)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tags (
              name TEXT PRIMARY KEY,
              category TEXT NOT NULL,
              grp TEXT NOT NULL,
              description TEXT NOT NULL,
              usage_count INTEGER NOT NULL DEFAULT 0,
              created_at REAL NOT NULL
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_tags_usage ON tags(usage_count DESC, name);")
        now = float(self.clock())
        for group, names in PREDEFINED_TAGS.items():
            for name in names:
                conn.execute(
                    "INSERT OR IGNORE INTO tags(name, category, grp, description, usage_count, created_at) VALUES (?, ?, ?, ?, 0, ?)",
                    (name, TagCategory.predefined.value, group, "", now),
                )

    @staticmethod
    def _row(row: sqlite3.Row) -> TagRecord:
        return TagRecord(
            name=row["name"],
            category=TagCategory(row["category"]),
            group=row["grp"],
            description=row["description"],
            usage_count=int(row["usage_count"]),
            created_at=float(row["created_at"]),
        )

    def get(self, name: str) -> Optional[TagRecord]:
        tag = normalize_tag(name)
        with self._session() as conn:
            row = conn.execute("SELECT * FROM tags WHERE name=?", (tag,)).fetchone()
        return self._row(row) if row else None

    def register_custom(self, name: str, description: str = "") -> TagRecord:
        tag = normalize_tag(name)
        with self._session() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO tags(name, category, grp, description, usage_count, created_at) VALUES (?, ?, 'custom', ?, 0, ?)",
                (tag, TagCategory.custom.value, str(description or "")[:200], float(self.clock())),
            )
            row = conn.execute("SELECT * FROM tags WHERE name=?", (tag,)).fetchone()
        return self._row(row)

    def increment(self, names: Iterable[str]) -> None:
        tags = normalize_tags(names)
        if not tags:
            return
        now = float(self.clock())
        with self._session() as conn:
            for tag in tags:
                conn.execute(
                    "INSERT OR IGNORE INTO tags(name, category, grp, description, usage_count, created_at) VALUES (?, ?, 'custom', '', 0, ?)",
                    (tag, TagCategory.custom.value, now),
                )
                conn.execute("UPDATE tags SET usage_count = usage_count + 1 WHERE name=?", (tag,))

    def decrement(self, names: Iterable[str]) -> None:
        tags = normalize_tags(names)
        if not tags:
            return
        with self._session() as conn:
            for tag in tags:
                conn.execute("UPDATE tags SET usage_count = MAX(usage_count - 1, 0) WHERE name=?", (tag,))

    def list_tags(self, *, category: Optional[str] = None, group: Optional[str] = None) -> List[TagRecord]:
        where: List[str] = []
        params: List[Any] = []
        if category:
            try:
                params.append(TagCategory(category).value)
            except ValueError as e:
                raise ValidationError("category", "unknown tag category") from e
            where.append("category = ?")
        if group:
            where.append("grp = ?")
            params.append(str(group))
        sql = "SELECT * FROM tags"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY grp, name"
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row(r) for r in rows]

    def suggest(self, prefix: str, *, limit: int = 10) -> List[str]:
        p = _SEP_RE.sub("-", str(prefix or "").strip().lower())
        p = _BAD_RE.sub("", p)
        with self._session() as conn:
            rows = conn.execute(
                "SELECT name FROM tags WHERE name LIKE ? ORDER BY usage_count DESC, name ASC LIMIT ?",
                (p + "%", int(limit)),
            ).fetchall()
        return [str(r["name"]) for r in rows]

    def analytics(self, *, top_n: int = 10) -> Dict[str, Any]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM tags ORDER BY usage_count DESC, name ASC").fetchall()
        recs = [self._row(r) for r in rows]
        return {
            "total": len(recs),
            "predefined": sum(1 for r in recs if r.category == TagCategory.predefined),
            "custom": sum(1 for r in recs if r.category == TagCategory.custom),
            "most_used": [{"name": r.name, "usage_count": r.usage_count} for r in recs if r.usage_count > 0][: int(top_n)],
            "unused": sorted(r.name for r in recs if r.usage_count == 0),
        }
