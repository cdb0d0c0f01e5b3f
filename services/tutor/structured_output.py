from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.I)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_LIST_PREFIX_RE = re.compile(r"^[-*•\d.)\s]+")

MAX_ANSWER_PILLS = 4


@dataclass
class InteractiveElements:
    question: str = ""
    answer_pills: List[str] = field(default_factory=list)
    correct_index: int = -1
    explanation: str = ""
    starters: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "answerPills": list(self.answer_pills),
            "correctIndex": self.correct_index,
            "explanation": self.explanation,
            "starters": list(self.starters),
        }


@dataclass
class ComprehensionPills:
    question: str = ""
    answer_pills: List[str] = field(default_factory=list)
    correct_index: int = -1
    explanation: str = ""
    followup_pills: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "answerPills": list(self.answer_pills),
            "correctIndex": self.correct_index,
            "explanation": self.explanation,
            "followupPills": list(self.followup_pills),
        }


@dataclass
class QuizQuestion:
    id: str
    question: str
    options: List[str]
    correct_index: int
    explanation: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "options": list(self.options),
            "correctIndex": self.correct_index,
            "explanation": self.explanation,
        }


@dataclass
class Flashcard:
    id: str
    front: str
    back: str
    mnemonic: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.id, "front": self.front, "back": self.back, "mnemonic": self.mnemonic}


def _candidates(text: str) -> List[str]:
    raw = str(text or "").strip()
    out: List[str] = []
    fence = _FENCE_RE.search(raw)
    if fence:
        out.append(fence.group(1).strip())
    out.append(raw)
    obj = _OBJECT_RE.search(raw)
    if obj:
        out.append(obj.group(0))
    return out


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first JSON object found in model output, or None."""
    for candidate in _candidates(text):
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except (ValueError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        lines = [_LIST_PREFIX_RE.sub("", line).strip() for line in value.splitlines()]
        return [line for line in lines if line]
    return []


def _coerce_index(value: Any, size: int) -> int:
    if isinstance(value, bool):
        return -1
    try:
        idx = int(value)
    except (TypeError, ValueError):
        return -1
    return idx if 0 <= idx < size else -1


def parse_interactive_elements(text: str) -> InteractiveElements:
    data = extract_json_object(text)
    if data is None:
        _log.warning("interactive elements unparseable; using defaults (len=%d)", len(str(text or "")))
        return InteractiveElements()
    pills = _string_list(_first(data, "answerPills", "answer_pills", "options"))[:MAX_ANSWER_PILLS]
    return InteractiveElements(
        question=str(data.get("question") or "").strip(),
        answer_pills=pills,
        correct_index=_coerce_index(_first(data, "correctIndex", "correct_index"), len(pills)),
        explanation=str(data.get("explanation") or "").strip(),
        starters=_string_list(_first(data, "starters", "followupPills", "followup_pills")),
    )


def parse_comprehension_pills(text: str) -> ComprehensionPills:
    data = extract_json_object(text)
    if data is None:
        _log.warning("comprehension pills unparseable; using defaults (len=%d)", len(str(text or "")))
        return ComprehensionPills()
    pills = _string_list(
        _first(data, "answerPills", "answer_pills", "options", "answerOptions", "answer_options")
    )[:MAX_ANSWER_PILLS]
    return ComprehensionPills(
        question=str(_first(data, "question", "mcqQuestion") or "").strip(),
        answer_pills=pills,
        correct_index=_coerce_index(_first(data, "correctIndex", "correct_index"), len(pills)),
        explanation=str(data.get("explanation") or "").strip(),
        followup_pills=_string_list(
            _first(data, "followupPills", "followup_pills", "followUpPills", "follow_up_pills", "starters")
        ),
    )


def _object_items(data: Optional[Dict[str, Any]], *keys: str) -> List[Dict[str, Any]]:
    items = _first(data, *keys) if data is not None else None
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def parse_quiz_questions(text: str) -> List[QuizQuestion]:
    """Questions without text or with fewer than two options are dropped."""
    items = _object_items(extract_json_object(text), "questions", "quiz")
    out: List[QuizQuestion] = []
    for item in items:
        question = str(item.get("question") or "").strip()
        options = _string_list(_first(item, "options", "answerPills", "answer_pills"))[:MAX_ANSWER_PILLS]
        if not question or len(options) < 2:
            continue
        out.append(
            QuizQuestion(
                id=str(item.get("id") or f"q{len(out) + 1}"),
                question=question,
                options=options,
                correct_index=_coerce_index(_first(item, "correctIndex", "correct_index"), len(options)),
                explanation=str(item.get("explanation") or "").strip(),
            )
        )
    if not out:
        _log.warning("quiz output unparseable or empty (len=%d)", len(str(text or "")))
    return out


def parse_flashcards(text: str) -> List[Flashcard]:
    items = _object_items(extract_json_object(text), "cards", "flashcards")
    out: List[Flashcard] = []
    for item in items:
        front = str(item.get("front") or "").strip()
        back = str(item.get("back") or "").strip()
        if not front or not back:
            continue
        mnemonic = str(item.get("mnemonic") or "").strip()
        out.append(
            Flashcard(
                id=str(item.get("id") or f"fc{len(out) + 1}"),
                front=front,
                back=back,
                mnemonic=mnemonic if mnemonic and mnemonic.lower() != "null" else None,
            )
        )
    if not out:
        _log.warning("flashcard output unparseable or empty (len=%d)", len(str(text or "")))
    return out
