from __future__ import annotations

from typing import Any, List, Sequence

from llm_gateway import UnifiedLLMRequest

from .context_window import ConversationMessage
from .pills_service import NON_TEXT_CONTENT_TYPES
from .prompts import build_flashcard_prompt, build_quiz_prompt, study_tool_user_message
from .structured_output import Flashcard, QuizQuestion, parse_flashcards, parse_quiz_questions

QUIZ_TEMPERATURE = 0.5
FLASHCARD_TEMPERATURE = 0.5
STUDY_TOOL_MAX_TOKENS = 2000
RECENT_CONTEXT_MESSAGES = 8

QUIZ_MESSAGE = "Here is your quiz!"
FLASHCARDS_MESSAGE = "Here are your flashcards!"


def recent_context(history: Sequence[ConversationMessage], limit: int = RECENT_CONTEXT_MESSAGES) -> List[str]:
    dialog = [
        m
        for m in history
        if m.role in ("user", "assistant") and m.content_type not in NON_TEXT_CONTENT_TYPES
    ]
    return [
        f"{'Student' if m.role == 'user' else 'Tutor'}: {m.content}"
        for m in dialog[-limit:]
    ]


def existing_flashcard_fronts(history: Sequence[ConversationMessage]) -> List[str]:
    fronts: List[str] = []
    for message in history:
        if message.content_type != "flashcards" or not message.data:
            continue
        for card in message.data.get("cards") or []:
            if isinstance(card, dict) and card.get("front"):
                fronts.append(str(card["front"]))
    return fronts


def _generate(handle: Any, system: str, user: str, temperature: float) -> str:
    resp = handle.generate(
        UnifiedLLMRequest(
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=temperature,
            max_tokens=STUDY_TOOL_MAX_TOKENS,
        )
    )
    return resp.text


def generate_quiz(handle: Any, topic_name: str, history: Sequence[ConversationMessage]) -> List[QuizQuestion]:
    """Provider errors propagate; unparseable output yields an empty quiz."""
    text = _generate(
        handle,
        build_quiz_prompt(topic_name),
        study_tool_user_message(topic_name, recent_context(history), "Generate a 5-question quiz."),
        QUIZ_TEMPERATURE,
    )
    return parse_quiz_questions(text)


def generate_flashcards(
    handle: Any, topic_context: str, history: Sequence[ConversationMessage]
) -> List[Flashcard]:
    text = _generate(
        handle,
        build_flashcard_prompt(topic_context, existing_flashcard_fronts(history)),
        study_tool_user_message(topic_context, recent_context(history), "Generate flashcards."),
        FLASHCARD_TEMPERATURE,
    )
    return parse_flashcards(text)
