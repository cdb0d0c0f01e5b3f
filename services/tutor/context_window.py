from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import MAX_RECENT_MESSAGES, SUMMARY_TRANSCRIPT_MAX_CHARS

_log = logging.getLogger(__name__)

EARLIER_SUMMARY_PREFIX = "Earlier conversation summary:\n"

_ROLE_LABELS = {"user": "Student", "assistant": "Tutor"}


@dataclass(frozen=True)
class ConversationMessage:
    role: str
    content: str
    content_type: str = "text"
    created_at: str = ""
    depth: Optional[int] = None
    id: str = ""
    # structured body for quiz and flashcard messages
    data: Optional[Dict[str, Any]] = None

    def as_chat(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "content_type": self.content_type,
            "created_at": self.created_at,
        }
        if self.depth is not None:
            out["depth"] = self.depth
        if self.data is not None:
            out["data"] = self.data
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ConversationMessage":
        depth = raw.get("depth")
        return cls(
            role=str(raw.get("role") or "user"),
            content=str(raw.get("content") or ""),
            content_type=str(raw.get("content_type") or "text"),
            created_at=str(raw.get("created_at") or ""),
            depth=int(depth) if isinstance(depth, (int, float)) and not isinstance(depth, bool) else None,
            id=str(raw.get("id") or ""),
            data=raw.get("data") if isinstance(raw.get("data"), dict) else None,
        )


def build_transcript(messages: Sequence[ConversationMessage], max_chars: int = SUMMARY_TRANSCRIPT_MAX_CHARS) -> str:
    lines = [f"{_ROLE_LABELS.get(m.role, m.role.title())}: {m.content}" for m in messages]
    return "\n\n".join(lines)[: max(0, int(max_chars))]


def build_prompt(
    system_prompt: str,
    history: Sequence[ConversationMessage],
    new_user_message: Optional[str],
    *,
    summarize: Callable[[str], str],
    max_recent: int = MAX_RECENT_MESSAGES,
) -> List[Dict[str, str]]:
    """Assemble the ordered message list for one generation call.

    System-role messages in ``history`` are dropped. The last ``max_recent``
    remaining messages are kept verbatim; anything older is condensed by a
    single ``summarize(transcript)`` call whose text is placed right after the
    system prompt. Errors from ``summarize`` propagate.
    """
    dialog = [m for m in history if m.role != "system"]
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]

    if len(dialog) > max_recent:
        older = dialog[:-max_recent]
        recent = dialog[-max_recent:]
        _log.debug("condensing %d older messages", len(older))
        summary = summarize(build_transcript(older))
        messages.append({"role": "system", "content": EARLIER_SUMMARY_PREFIX + str(summary or "")})
    else:
        recent = dialog

    messages.extend(m.as_chat() for m in recent)
    if new_user_message is not None:
        messages.append({"role": "user", "content": new_user_message})
    return messages
