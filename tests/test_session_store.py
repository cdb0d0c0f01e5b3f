import threading
from pathlib import Path

import pytest

from services.tutor.session_store import SessionStore, safe_id


def _store(tmp_path: Path) -> SessionStore:
    store = SessionStore(tmp_path)
    store.save_course(
        "c1",
        name="Organic Chemistry",
        goal="classwork",
        year_of_study="3rd year",
        topics={"T1": "Alkenes"},
        chapters={"CH1": "Addition reactions"},
    )
    return store


def test_session_is_only_visible_to_its_owner(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rec = store.create_session(user_id="u1", course_id="c1", topic_id="T1", session_id="s1")
    assert store.load_session("s1", "u1") == rec
    assert store.load_session("s1", "u2") is None
    assert store.load_session("missing", "u1") is None


def test_course_context_and_names(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ctx = store.load_course_context("c1")
    assert ctx.name == "Organic Chemistry"
    assert ctx.year_of_study == "3rd year"
    assert ctx.exam_name is None
    assert store.load_topic_name("c1", "T1") == "Alkenes"
    assert store.load_chapter_name("c1", "CH1") == "Addition reactions"
    assert store.load_topic_name("c1", "nope") is None
    assert store.load_chapter_name("c1", None) is None
    assert store.load_course_context("unknown") is None


def test_append_and_load_history_preserves_order(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append_message("s1", role="user", content="hi")
    store.append_message("s1", role="assistant", content="hello", depth=2)
    store.append_message("s1", role="assistant", content="quiz!", content_type="quiz")
    history = store.load_history("s1")
    assert [(m.role, m.content) for m in history] == [("user", "hi"), ("assistant", "hello"), ("assistant", "quiz!")]
    assert history[1].depth == 2
    assert history[2].content_type == "quiz"
    assert all(m.id and m.created_at for m in history)


def test_overwrite_replaces_content_in_place(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append_message("s1", role="user", content="q")
    target = store.append_message("s1", role="assistant", content="old", depth=3)
    store.append_message("s1", role="user", content="q2")

    store.overwrite_message("s1", target.id, "new", depth=1)

    history = store.load_history("s1")
    assert len(history) == 3
    assert history[1].id == target.id
    assert history[1].content == "new"
    assert history[1].depth == 1
    assert history[1].created_at == target.created_at


def test_overwrite_unknown_message_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append_message("s1", role="user", content="q")
    with pytest.raises(KeyError):
        store.overwrite_message("s1", "nope", "x")


def test_corrupt_lines_are_skipped(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append_message("s1", role="user", content="q")
    path = tmp_path / "sessions" / "s1" / "messages.jsonl"
    path.write_text(path.read_text(encoding="utf-8") + "{not json\n", encoding="utf-8")
    assert [m.content for m in store.load_history("s1")] == ["q"]


def test_concurrent_appends_are_not_lost(tmp_path: Path) -> None:
    store = _store(tmp_path)

    def _append(i: int) -> None:
        store.append_message("s1", role="user", content=f"m{i}")

    threads = [threading.Thread(target=_append, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(m.content for m in store.load_history("s1")) == sorted(f"m{i}" for i in range(20))
    assert not list((tmp_path / "sessions" / "s1").glob("*.tmp"))


def test_safe_id_rejects_traversal() -> None:
    assert safe_id("../etc/passwd") == "etc_passwd"
    with pytest.raises(ValueError):
        safe_id("///")
