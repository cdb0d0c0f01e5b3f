"""File-backed sessions, messages and course context.

Layout under ``DATA_DIR``::

    courses/<course_id>.json          {name, goal, yearOfStudy, examName, topics, chapters}
    sessions/<session_id>/meta.json   {session_id, user_id, course_id, topic_id, chapter_id}
    sessions/<session_id>/messages.jsonl

Every write replaces the target file atomically (temp file, fsync, rename)
while holding a per-path reentrant lock, so readers never observe a partial
file and concurrent appends to one session are serialised.
"""
from __future__ import annotations

import json
import logging
import os
import re
import threading
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .context_window import ConversationMessage

_log = logging.getLogger(__name__)

_PATH_LOCKS: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
_PATH_LOCKS_LOCK = threading.Lock()
_SAFE_ID_RE = re.compile(r"[^\w-]+")


def _path_lock(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_LOCK:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
        return lock


def _tmp_sibling(path: Path) -> Path:
    return path.with_suffix(path.suffix + f".{uuid.uuid4().hex}.tmp")


def _replace_atomically(path: Path, lines: Iterable[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _tmp_sibling(path)
    try:
        with tmp.open("w", encoding="utf-8") as fh:
            for line in lines:
                fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())
        tmp.replace(path)
    finally:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            _log.debug("failed to clean up temp file %s", tmp)


def safe_id(value: str) -> str:
    cleaned = _SAFE_ID_RE.sub("_", str(value or "")).strip("_")
    if not cleaned:
        raise ValueError("identifier is empty")
    return cleaned


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    user_id: str
    course_id: str
    topic_id: Optional[str] = None
    chapter_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "course_id": self.course_id,
            "topic_id": self.topic_id,
            "chapter_id": self.chapter_id,
        }


@dataclass(frozen=True)
class CourseContext:
    name: str
    goal: Optional[str] = None
    year_of_study: Optional[str] = None
    exam_name: Optional[str] = None


class SessionStore:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    # paths

    def _course_path(self, course_id: str) -> Path:
        return self.data_dir / "courses" / f"{safe_id(course_id)}.json"

    def _session_dir(self, session_id: str) -> Path:
        return self.data_dir / "sessions" / safe_id(session_id)

    def _meta_path(self, session_id: str) -> Path:
        return self._session_dir(session_id) / "meta.json"

    def _messages_path(self, session_id: str) -> Path:
        return self._session_dir(session_id) / "messages.jsonl"

    @staticmethod
    def _read_json(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else None

    def _write_json(self, path: Path, payload: Dict[str, Any]) -> None:
        with _path_lock(path):
            _replace_atomically(path, [json.dumps(payload, ensure_ascii=False, indent=2)])

    # courses

    def save_course(
        self,
        course_id: str,
        *,
        name: str,
        goal: Optional[str] = None,
        year_of_study: Optional[str] = None,
        exam_name: Optional[str] = None,
        topics: Optional[Dict[str, str]] = None,
        chapters: Optional[Dict[str, str]] = None,
    ) -> None:
        self._write_json(
            self._course_path(course_id),
            {
                "name": name,
                "goal": goal,
                "yearOfStudy": year_of_study,
                "examName": exam_name,
                "topics": dict(topics or {}),
                "chapters": dict(chapters or {}),
            },
        )

    def _load_course(self, course_id: str) -> Optional[Dict[str, Any]]:
        if not course_id:
            return None
        return self._read_json(self._course_path(course_id))

    def load_course_context(self, course_id: str) -> Optional[CourseContext]:
        data = self._load_course(course_id)
        if data is None:
            return None
        return CourseContext(
            name=str(data.get("name") or "Course"),
            goal=data.get("goal") or None,
            year_of_study=data.get("yearOfStudy") or None,
            exam_name=data.get("examName") or None,
        )

    def load_topic_name(self, course_id: str, topic_id: Optional[str]) -> Optional[str]:
        if not topic_id:
            return None
        data = self._load_course(course_id) or {}
        name = (data.get("topics") or {}).get(topic_id)
        return str(name) if name else None

    def load_chapter_name(self, course_id: str, chapter_id: Optional[str]) -> Optional[str]:
        if not chapter_id:
            return None
        data = self._load_course(course_id) or {}
        name = (data.get("chapters") or {}).get(chapter_id)
        return str(name) if name else None

    # sessions

    def create_session(
        self,
        *,
        user_id: str,
        course_id: str,
        topic_id: Optional[str] = None,
        chapter_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SessionRecord:
        record = SessionRecord(
            session_id=session_id or uuid.uuid4().hex,
            user_id=user_id,
            course_id=course_id,
            topic_id=topic_id,
            chapter_id=chapter_id,
        )
        self._write_json(self._meta_path(record.session_id), record.to_dict())
        return record

    def load_session(self, session_id: str, user_id: str) -> Optional[SessionRecord]:
        """Return the session only if it exists and belongs to ``user_id``."""
        try:
            data = self._read_json(self._meta_path(session_id))
        except ValueError:
            _log.warning("unreadable session meta session_id=%s", session_id, exc_info=True)
            return None
        if data is None or str(data.get("user_id") or "") != str(user_id):
            return None
        return SessionRecord(
            session_id=str(data.get("session_id") or session_id),
            user_id=str(data.get("user_id") or ""),
            course_id=str(data.get("course_id") or ""),
            topic_id=data.get("topic_id") or None,
            chapter_id=data.get("chapter_id") or None,
        )

    # messages

    def load_history(self, session_id: str) -> List[ConversationMessage]:
        path = self._messages_path(session_id)
        if not path.exists():
            return []
        out: List[ConversationMessage] = []
        with _path_lock(path):
            lines = path.read_text(encoding="utf-8").splitlines()
        for line in lines:
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except ValueError:
                _log.warning("skipping corrupt message line session_id=%s", session_id)
                continue
            if isinstance(raw, dict):
                out.append(ConversationMessage.from_dict(raw))
        return out

    def _rewrite_messages(self, path: Path, messages: List[ConversationMessage]) -> None:
        _replace_atomically(path, (json.dumps(m.to_dict(), ensure_ascii=False) + "\n" for m in messages))

    def append_message(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        content_type: str = "text",
        depth: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> ConversationMessage:
        message = ConversationMessage(
            id=uuid.uuid4().hex,
            role=role,
            content=content,
            content_type=content_type,
            created_at=datetime.now().isoformat(timespec="seconds"),
            depth=depth,
            data=data,
        )
        path = self._messages_path(session_id)
        with _path_lock(path):
            history = self.load_history(session_id)
            history.append(message)
            self._rewrite_messages(path, history)
        return message

    def overwrite_message(
        self,
        session_id: str,
        message_id: str,
        new_content: str,
        *,
        depth: Optional[int] = None,
    ) -> None:
        path = self._messages_path(session_id)
        with _path_lock(path):
            history = self.load_history(session_id)
            for idx, message in enumerate(history):
                if message.id == message_id:
                    history[idx] = ConversationMessage(
                        id=message.id,
                        role=message.role,
                        content=new_content,
                        content_type=message.content_type,
                        created_at=message.created_at,
                        depth=depth if depth is not None else message.depth,
                        data=message.data,
                    )
                    break
            else:
                raise KeyError(f"message not found: {message_id}")
            self._rewrite_messages(path, history)
