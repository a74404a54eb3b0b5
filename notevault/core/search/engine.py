from __future__ import annotations

import json
import sqlite3
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from notevault.core.access.evaluator import AccessControlEvaluator
from notevault.core.access.models import Actor, DenialReason, NoteAction
from notevault.core.errors import AccessDenied, ConcurrencyConflict, InvalidSort, NotFound, ValidationError
from notevault.core.notes.models import Note
from notevault.core.storage.sqlite import SqliteStore
from notevault.core.tags.index import normalize_tags


TITLE_WEIGHT = 10
BODY_WEIGHT = 5
TAG_WEIGHT = 3


class SortField(str, Enum):
    relevance = "relevance"
    created_at = "created_at"
    updated_at = "updated_at"
    title = "title"


class SearchQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = ""
    tags: List[str] = Field(default_factory=list)
    category_id: Optional[str] = None
    client_id: Optional[str] = None
    session_id: Optional[str] = None
    date_from: Optional[float] = None
    date_to: Optional[float] = None
    include_archived: bool = False


class SearchSort(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: Optional[SortField] = None
    descending: bool = True


class SearchHit(BaseModel):
    model_config = ConfigDict(extra="forbid")

    note: Note
    score: int = 0


class SearchPage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    results: List[SearchHit] = Field(default_factory=list)
    total: int = 0
    total_pages: int = 0
    page: int = 1
    page_size: int = 20


class SavedSearch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=100)
    query: SearchQuery = Field(default_factory=SearchQuery)
    sort: SearchSort = Field(default_factory=SearchSort)
    version: int = 1
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())


def relevance_score(note: Note, terms: List[str]) -> int:
    title = (note.title or "").lower()
    body = (note.body or "").lower()
    tags = [t.lower() for t in note.tags]
    score = 0
    for term in terms:
        if term in title:
            score += TITLE_WEIGHT
        if term in body:
            score += BODY_WEIGHT
        if any(term in t for t in tags):
            score += TAG_WEIGHT
    return score


def _coerce(model, value: Any, field_name: str):
    if value is None:
        return model()
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError(field_name, "invalid value") from e


class SearchEngine:
    """
    Structural filters first, then a per-candidate view check.
    Notes the actor may not view are dropped silently and never counted.
    Searching is a listing: no audit entries, no access counter bumps.
    """

    def __init__(
        self,
        *,
        repository: Any,
        evaluator: Optional[AccessControlEvaluator] = None,
        default_page_size: int = 20,
        max_page_size: int = 100,
        logger: Any = None,
    ):
        self.repository = repository
        self.evaluator = evaluator or repository.evaluator
        self.default_page_size = int(default_page_size)
        self.max_page_size = int(max_page_size)
        self.logger = logger

    def search(
        self,
        actor: Actor,
        query: Any = None,
        sort: Any = None,
        page: int = 1,
        page_size: Optional[int] = None,
        *,
        reason: Optional[str] = None,
    ) -> SearchPage:
        q = _coerce(SearchQuery, query, "query")
        s = _coerce(SearchSort, sort, "sort")
        if int(page) < 1:
            raise ValidationError("page", "must be >= 1")
        size = int(page_size or self.default_page_size)
        if size < 1 or size > self.max_page_size:
            raise ValidationError("page_size", f"must be between 1 and {self.max_page_size}")

        terms = [t for t in q.text.lower().split() if t]
        sort_field = s.field or (SortField.relevance if terms else SortField.created_at)
        if sort_field == SortField.relevance and not terms:
            raise InvalidSort(sort_field.value)
        want_tags = normalize_tags(q.tags)

        candidates = self.repository.scan(
            client_id=q.client_id,
            session_id=q.session_id,
            category_id=q.category_id,
            created_from=q.date_from,
            created_to=q.date_to,
            include_archived=q.include_archived,
        )
        hits: List[SearchHit] = []
        for note in candidates:
            if want_tags and not all(t in note.tags for t in want_tags):
                continue
            score = relevance_score(note, terms) if terms else 0
            if terms and score == 0:
                continue
            if not self.evaluator.evaluate(actor, note, NoteAction.view, reason=reason).allowed:
                continue
            hits.append(SearchHit(note=note, score=score))

        self._sort(hits, sort_field, s.descending)
        total = len(hits)
        start = (int(page) - 1) * size
        return SearchPage(
            results=hits[start : start + size],
            total=total,
            total_pages=(total + size - 1) // size,
            page=int(page),
            page_size=size,
        )

    @staticmethod
    def _sort(hits: List[SearchHit], field: SortField, descending: bool) -> None:
        if field == SortField.relevance:
            # score desc, then most recently updated
            hits.sort(key=lambda h: (h.score, h.note.updated_at), reverse=descending)
        elif field == SortField.title:
            hits.sort(key=lambda h: ((h.note.title or "").lower(), h.note.id), reverse=descending)
        elif field == SortField.updated_at:
            hits.sort(key=lambda h: (h.note.updated_at, h.note.id), reverse=descending)
        else:
            hits.sort(key=lambda h: (h.note.created_at, h.note.id), reverse=descending)


class SavedSearchStore(SqliteStore):
    """
    Saved searches are engine-owned, versioned records; callers hold no filter state.
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
            CREATE TABLE IF NOT EXISTS saved_searches (
              id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              name TEXT NOT NULL,
              version INTEGER NOT NULL,
              updated_at REAL NOT NULL,
              json TEXT NOT NULL
            );
            """
        )
        conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_saved_owner_name ON saved_searches(owner_id, name);")

    def _get(self, conn: sqlite3.Connection, search_id: str) -> Optional[SavedSearch]:
        row = conn.execute("SELECT json FROM saved_searches WHERE id=?", (str(search_id),)).fetchone()
        return SavedSearch.model_validate(json.loads(row["json"])) if row else None

    def _name_taken(self, conn: sqlite3.Connection, owner_id: str, name: str, exclude_id: str = "") -> bool:
        row = conn.execute(
            "SELECT 1 FROM saved_searches WHERE owner_id=? AND name=? AND id<>?",
            (owner_id, name, exclude_id),
        ).fetchone()
        return row is not None

    def _owned(self, conn: sqlite3.Connection, actor: Actor, search_id: str) -> SavedSearch:
        ss = self._get(conn, search_id)
        if ss is None:
            raise NotFound(str(search_id))
        if ss.owner_id != actor.user_id:
            raise AccessDenied(DenialReason.not_authorized.value, search_id=str(search_id))
        return ss

    def save(self, actor: Actor, name: str, query: Any = None, sort: Any = None) -> SavedSearch:
        nm = str(name or "").strip()
        if not nm:
            raise ValidationError("name", "required")
        now = float(self.clock())
        try:
            ss = SavedSearch(
                owner_id=actor.user_id,
                name=nm,
                query=_coerce(SearchQuery, query, "query"),
                sort=_coerce(SearchSort, sort, "sort"),
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise ValidationError("name", "invalid value") from e
        with self._session() as conn:
            if self._name_taken(conn, ss.owner_id, ss.name):
                raise ValidationError("name", "already in use")
            conn.execute(
                "INSERT INTO saved_searches(id, owner_id, name, version, updated_at, json) VALUES (?, ?, ?, ?, ?, ?)",
                (ss.id, ss.owner_id, ss.name, ss.version, ss.updated_at, ss.model_dump_json()),
            )
        return ss

    def update(
        self,
        actor: Actor,
        search_id: str,
        *,
        name: Optional[str] = None,
        query: Any = None,
        sort: Any = None,
        expected_version: Optional[int] = None,
    ) -> SavedSearch:
        upd: Dict[str, Any] = {}
        if name is not None:
            nm = str(name).strip()
            if not nm or len(nm) > 100:
                raise ValidationError("name", "must be 1-100 characters")
            upd["name"] = nm
        if query is not None:
            upd["query"] = _coerce(SearchQuery, query, "query")
        if sort is not None:
            upd["sort"] = _coerce(SearchSort, sort, "sort")
        if not upd:
            raise ValidationError("saved_search", "no changes")
        with self._session() as conn:
            ss = self._owned(conn, actor, search_id)
            if expected_version is not None and int(expected_version) != ss.version:
                raise ConcurrencyConflict(ss.id, expected=int(expected_version), actual=ss.version)
            if "name" in upd and self._name_taken(conn, ss.owner_id, upd["name"], exclude_id=ss.id):
                raise ValidationError("name", "already in use")
            upd["version"] = ss.version + 1
            upd["updated_at"] = float(self.clock())
            new = ss.model_copy(update=upd)
            conn.execute(
                "UPDATE saved_searches SET name=?, version=?, updated_at=?, json=? WHERE id=? AND version=?",
                (new.name, new.version, new.updated_at, new.model_dump_json(), new.id, ss.version),
            )
        return new

    def get(self, actor: Actor, search_id: str) -> SavedSearch:
        with self._session() as conn:
            return self._owned(conn, actor, search_id)

    def list_for(self, actor: Actor) -> List[SavedSearch]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT json FROM saved_searches WHERE owner_id=? ORDER BY name ASC", (actor.user_id,)
            ).fetchall()
        return [SavedSearch.model_validate(json.loads(r["json"])) for r in rows]

    def delete(self, actor: Actor, search_id: str) -> None:
        with self._session() as conn:
            ss = self._owned(conn, actor, search_id)
            conn.execute("DELETE FROM saved_searches WHERE id=?", (ss.id,))
