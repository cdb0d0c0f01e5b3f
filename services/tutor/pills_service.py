from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from llm_gateway import UnifiedLLMRequest

from .context_window import ConversationMessage
from .prompts import build_pills_prompt
from .structured_output import ComprehensionPills, parse_comprehension_pills

_log = logging.getLogger(__name__)

NON_TEXT_CONTENT_TYPES = {"quiz", "flashcards", "videos"}
PILLS_TEMPERATURE = 0.4
PILLS_MAX_TOKENS = 500


def latest_assistant_text(history: Sequence[ConversationMessage]) -> Optional[ConversationMessage]:
    for message in reversed(history):
        if message.role == "assistant" and message.content_type not in NON_TEXT_CONTENT_TYPES:
            return message
    return None


def generate_comprehension_pills(handle: Any, ai_response: str, topic_name: str, level_label: str) -> ComprehensionPills:
    """Provider errors propagate; unparseable output degrades to empty pills."""
    resp = handle.generate(
        UnifiedLLMRequest(
            messages=[
                {"role": "system", "content": build_pills_prompt(ai_response, topic_name, level_label)},
                {"role": "user", "content": "Generate the question, answer pills, and followup pills."},
            ],
            temperature=PILLS_TEMPERATURE,
            max_tokens=PILLS_MAX_TOKENS,
        )
    )
    return parse_comprehension_pills(resp.text)
