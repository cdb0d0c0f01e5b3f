from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence


@dataclass(frozen=True)
class GenerationContext:
    course_name: str
    topic_name: str
    depth: int
    chapter_name: Optional[str] = None
    goal: Optional[str] = None
    year_of_study: Optional[str] = None
    exam_name: Optional[str] = None

    @property
    def focus(self) -> str:
        return f"{self.topic_name} > {self.chapter_name}" if self.chapter_name else self.topic_name


@dataclass(frozen=True)
class AcademicLevel:
    label: str
    instructions: str


_YEAR_LEVELS = [
    (
        r"grad|master|phd|doctoral|postgrad",
        AcademicLevel(
            "graduate",
            "Assume full undergraduate mastery. Use rigorous language and notation, discuss nuance, "
            "edge cases and connections across disciplines.",
        ),
    ),
    (
        r"4th|fourth|senior|year\s*4|yr\s*4",
        AcademicLevel(
            "senior undergraduate",
            "Use field-standard terminology freely and go beyond textbook explanations: trade-offs, "
            "applications and derivations.",
        ),
    ),
    (
        r"3rd|third|junior|year\s*3|yr\s*3",
        AcademicLevel(
            "junior undergraduate",
            "Use correct technical language, introduce and explain equations, and connect new ideas "
            "to earlier coursework.",
        ),
    ),
    (
        r"2nd|second|sophomore|year\s*2|yr\s*2",
        AcademicLevel(
            "sophomore",
            "Define specialised terms when first introduced, build intuition with analogies, then give "
            "the formal treatment.",
        ),
    ),
    (
        r"1st|first|freshman|fresher|year\s*1|yr\s*1",
        AcademicLevel(
            "freshman",
            "Assume a first formal encounter with these ideas. Start from everyday analogies, define every "
            "term and keep notation light.",
        ),
    ),
]

_INTRO_COURSE = re.compile(r"intro|101|general|foundation|basic|fundamentals", re.I)
_ADVANCED_COURSE = re.compile(r"advanced|graduate|grad|seminar|research", re.I)

DEPTH_RESPONSE_INSTRUCTIONS: Dict[int, str] = {
    1: "Keep responses concise (3-5 paragraphs) unless the student asks for more depth.",
    2: "Write detailed responses (5-8 paragraphs) with richer examples and step-by-step reasoning.",
    3: "Write thorough responses (8-12 paragraphs) including worked examples and derivations where relevant.",
    4: "Write in depth: worked examples, derivations and links to neighbouring topics.",
    5: "Write at maximum depth. Cover edge cases, inter-topic connections and nuance with no length cap.",
}

DEPTH_SUMMARY_INSTRUCTIONS: Dict[int, str] = {
    1: "Write a concise orientation summary (3-5 paragraphs).",
    2: "Write a detailed summary (5-8 paragraphs with richer examples).",
    3: "Write a thorough summary (8-12 paragraphs including worked examples and key equations).",
    4: "Write an extended summary with worked examples, key equations and common pitfalls.",
    5: "Write a comprehensive deep-dive summary covering edge cases and inter-topic connections.",
}


def infer_academic_level(year_of_study: Optional[str] = None, course_name: Optional[str] = None) -> AcademicLevel:
    year = str(year_of_study or "").strip().lower()
    if year:
        for pattern, level in _YEAR_LEVELS:
            if re.search(pattern, year, re.I):
                return level
    course = str(course_name or "")
    if _INTRO_COURSE.search(course):
        return AcademicLevel(
            "introductory",
            "Build intuition first, then layer in formal language. Define every technical term you use.",
        )
    if _ADVANCED_COURSE.search(course):
        return AcademicLevel(
            "advanced",
            "Use rigorous language, introduce equations directly and assume solid prior fundamentals.",
        )
    return AcademicLevel(
        "undergraduate",
        "Assume mid-level undergraduate. Use correct terminology with brief definitions when needed.",
    )


def _depth_line(table: Dict[int, str], depth: int) -> str:
    return table[min(max(int(depth), 1), 5)]


def _goal_line(ctx: GenerationContext) -> str:
    if ctx.goal == "exam_prep":
        exam = f" ({ctx.exam_name})" if ctx.exam_name else ""
        return (
            f"The student is preparing for an exam{exam}. Prioritise the most testable concepts, "
            "common question patterns and exam technique alongside understanding."
        )
    return "The student is studying for ongoing classwork. Prioritise deep conceptual understanding."


def build_tutor_system_prompt(ctx: GenerationContext) -> str:
    level = infer_academic_level(ctx.year_of_study, ctx.course_name)
    return "\n".join(
        [
            f'You are an expert, encouraging tutor helping a {level.label} student study "{ctx.course_name}".',
            f"Current focus: {ctx.focus}.",
            "",
            f"Academic level: {level.instructions}",
            f"Goal: {_goal_line(ctx)}",
            "",
            "Your role:",
            "- Match language, depth and rigour to the student's level.",
            f"- {_depth_line(DEPTH_RESPONSE_INSTRUCTIONS, ctx.depth)}",
            "- Do not end with a question; the interface offers comprehension checks separately.",
            "- Do not suggest quizzes, flashcards or videos; the student already has those tools.",
            "",
            "Format responses in clear markdown.",
        ]
    )


def build_summary_prose_prompt(ctx: GenerationContext) -> str:
    level = infer_academic_level(ctx.year_of_study, ctx.course_name)
    chapter = f' > "{ctx.chapter_name}"' if ctx.chapter_name else ""
    return "\n".join(
        [
            f"You are an expert tutor writing an orientation summary for a {level.label} student.",
            f'Topic: "{ctx.topic_name}"{chapter}',
            f'Course: "{ctx.course_name}"',
            _goal_line(ctx),
            "",
            _depth_line(DEPTH_SUMMARY_INSTRUCTIONS, ctx.depth),
            "",
            "Output only markdown prose. No JSON, no code fences, no meta-commentary, no closing question.",
            f"Calibrate language and rigour: {level.instructions}",
        ]
    )


def build_summary_interactive_prompt(ctx: GenerationContext) -> str:
    level = infer_academic_level(ctx.year_of_study, ctx.course_name)
    chapter = f' > "{ctx.chapter_name}"' if ctx.chapter_name else ""
    return "\n".join(
        [
            f'Generate interactive study elements for a {level.label} student who just read a summary of '
            f'"{ctx.topic_name}"{chapter} in {ctx.course_name}.',
            "",
            "Return ONLY valid JSON:",
            '{"question": "...", "answerPills": ["A", "B", "C", "D"], "correctIndex": 0, '
            '"explanation": "...", "starters": ["...", "...", "..."]}',
            "",
            "- question: one concise comprehension question on the key concept",
            "- answerPills: exactly 4 options of 2-6 words, one correct, correct position randomised",
            "- correctIndex: integer 0-3",
            "- explanation: 1-2 sentences on why the correct answer is right",
            "- starters: 3 follow-up exploration prompts of 8-14 words",
        ]
    )


def build_pills_prompt(ai_response: str, topic_name: str, level_label: str) -> str:
    return "\n".join(
        [
            f'You are analysing a tutoring conversation about "{topic_name}" with a {level_label} student.',
            "",
            "The tutor just responded with:",
            "---",
            str(ai_response or "")[:2000],
            "---",
            "",
            "Return ONLY valid JSON:",
            '{"question": "...", "answerPills": ["A", "B", "C", "D"], "correctIndex": 1, '
            '"explanation": "...", "followupPills": ["...", "...", "..."]}',
            "",
            "- answerPills: exactly 4 short options, one correct",
            "- followupPills: 3 next-step explorations of 5-12 words not yet covered",
        ]
    )


CONVERSATION_SUMMARY_PROMPT = (
    "Summarise this tutoring conversation in 3-5 sentences, capturing key concepts covered "
    "and the student's understanding level."
)


def summary_transcript_messages(transcript: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": CONVERSATION_SUMMARY_PROMPT},
        {"role": "user", "content": transcript},
    ]


def build_quiz_prompt(topic_name: str) -> str:
    return "\n".join(
        [
            f'You are an expert tutor writing a short multiple-choice quiz on "{topic_name}".',
            "",
            "Write 5 questions that test understanding, not recall of wording.",
            "Each question has exactly 4 options with one correct answer in a randomised position.",
            "",
            "Return ONLY valid JSON:",
            '{"questions": [{"id": "q1", "question": "...", "options": ["A", "B", "C", "D"], '
            '"correctIndex": 2, "explanation": "..."}]}',
            "",
            "- explanation: 1-2 sentences on why the correct answer is right",
        ]
    )


def build_flashcard_prompt(topic_context: str, existing_fronts: Sequence[str] = ()) -> str:
    lines = [
        f'You are an expert tutor writing revision flashcards on "{topic_context}".',
        "",
        "Write 6-8 cards. The front is a short prompt or term; the back is a precise answer of 1-3 sentences.",
        "Add a mnemonic only where one genuinely helps, otherwise null.",
    ]
    fronts = [str(f).strip() for f in existing_fronts if str(f).strip()]
    if fronts:
        lines += ["", "The student already has these cards; do NOT duplicate them:"]
        lines += [f"- {front}" for front in fronts]
    lines += [
        "",
        "Return ONLY valid JSON:",
        '{"cards": [{"id": "fc1", "front": "...", "back": "...", "mnemonic": null}]}',
    ]
    return "\n".join(lines)


def study_tool_user_message(topic_label: str, context_lines: Sequence[str], instruction: str) -> str:
    return "\n".join(
        [
            f'Topic: "{topic_label}"',
            "",
            "Recent conversation context:",
            "\n".join(context_lines) if context_lines else "(no messages yet)",
            "",
            instruction,
        ]
    )
