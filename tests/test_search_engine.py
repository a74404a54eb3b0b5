from __future__ import annotations

import pytest

from notevault.core.errors import AccessDenied, ConcurrencyConflict, InvalidSort, ValidationError


def _seed(engine, coach, other_coach, clock):
    a = engine.create_note(coach, client_id="client-x", title="Career plan", body="talked about goals", tags=["career-goals"], access_level="team")
    clock.advance(60)
    b = engine.create_note(coach, client_id="client-x", title="Check-in", body="career worries and fear", tags=["fear"])
    clock.advance(60)
    c = engine.create_note(other_coach, client_id="client-y", title="Career talk", body="private career note")
    return a, b, c


def test_search_never_returns_unviewable_notes(engine, coach, other_coach, supervisor, clock):
    a, b, c = _seed(engine, coach, other_coach, clock)
    page = engine.search(coach, {"text": "career"})
    ids = [h.note.id for h in page.results]
    assert c.id not in ids
    assert set(ids) == {a.id, b.id}
    assert page.total == 2

    sup_page = engine.search(supervisor, {"text": "career"})
    assert [h.note.id for h in sup_page.results] == [a.id]
    assert sup_page.total == 1


def test_relevance_weights_and_tie_break(engine, coach, clock):
    t = engine.create_note(coach, client_id="x", title="fear", body="nothing")
    clock.advance(1)
    bod = engine.create_note(coach, client_id="x", title="other", body="fear inside")
    clock.advance(1)
    tag = engine.create_note(coach, client_id="x", title="other", body="nothing", tags=["fear"])
    clock.advance(1)
    bod2 = engine.create_note(coach, client_id="x", title="other", body="more fear")

    page = engine.search(coach, {"text": "FEAR"})
    assert [h.note.id for h in page.results] == [t.id, bod2.id, bod.id, tag.id]
    assert [h.score for h in page.results] == [10, 5, 5, 3]


def test_empty_text_defaults_to_created_at_desc(engine, coach, other_coach, clock):
    a, b, _ = _seed(engine, coach, other_coach, clock)
    page = engine.search(coach)
    assert [h.note.id for h in page.results] == [b.id, a.id]


def test_relevance_sort_needs_text(engine, coach):
    with pytest.raises(InvalidSort):
        engine.search(coach, {"text": "  "}, {"field": "relevance"})


def test_title_sort_and_pagination(engine, coach, clock):
    for t in ["b", "a", "c"]:
        engine.create_note(coach, client_id="x", title=t, body="x")
        clock.advance(1)
    p1 = engine.search(coach, None, {"field": "title", "descending": False}, page=1, page_size=2)
    p2 = engine.search(coach, None, {"field": "title", "descending": False}, page=2, page_size=2)
    assert [h.note.title for h in p1.results] == ["a", "b"]
    assert [h.note.title for h in p2.results] == ["c"]
    assert (p1.total, p1.total_pages) == (3, 2)
    with pytest.raises(ValidationError):
        engine.search(coach, page_size=10_000)


def test_structural_filters(engine, coach, clock):
    a = engine.create_note(coach, client_id="x", body="one", tags=["fear", "clarity"], session_id="s1")
    clock.advance(100)
    b = engine.create_note(coach, client_id="x", body="two", tags=["fear"], category_id="cat")
    clock.advance(100)
    c = engine.create_note(coach, client_id="y", body="three", tags=["fear"])
    engine.archive_note(coach, c.id)

    assert [h.note.id for h in engine.search(coach, {"tags": ["fear", "clarity"]}).results] == [a.id]
    assert [h.note.id for h in engine.search(coach, {"category_id": "cat"}).results] == [b.id]
    assert [h.note.id for h in engine.search(coach, {"session_id": "s1"}).results] == [a.id]
    assert {h.note.id for h in engine.search(coach, {"client_id": "x"}).results} == {a.id, b.id}
    assert c.id not in [h.note.id for h in engine.search(coach).results]
    assert c.id in [h.note.id for h in engine.search(coach, {"include_archived": True}).results]
    window = engine.search(coach, {"date_from": a.created_at + 50, "date_to": b.created_at + 50})
    assert [h.note.id for h in window.results] == [b.id]


def test_search_is_not_audited_and_does_not_count_access(engine, coach):
    n = engine.create_note(coach, client_id="x", body="hello")
    before = engine.audit.count()
    engine.search(coach, {"text": "hello"})
    assert engine.audit.count() == before
    assert engine.notes.load(n.id).access_count == 0


def test_saved_searches_are_versioned(engine, coach, other_coach, clock):
    n = engine.create_note(coach, client_id="x", body="goal talk", tags=["goal-setting"])
    ss = engine.save_search(coach, "goals", {"tags": ["goal-setting"]})
    assert ss.version == 1
    with pytest.raises(ValidationError):
        engine.save_search(coach, "goals")

    up = engine.update_saved_search(coach, ss.id, sort={"field": "updated_at"}, expected_version=1)
    assert up.version == 2
    with pytest.raises(ConcurrencyConflict):
        engine.update_saved_search(coach, ss.id, name="x", expected_version=1)

    assert [h.note.id for h in engine.run_saved_search(coach, ss.id).results] == [n.id]
    assert [s.name for s in engine.list_saved_searches(coach)] == ["goals"]
    assert engine.list_saved_searches(other_coach) == []
    with pytest.raises(AccessDenied):
        engine.run_saved_search(other_coach, ss.id)

    engine.delete_saved_search(coach, ss.id)
    assert engine.list_saved_searches(coach) == []
