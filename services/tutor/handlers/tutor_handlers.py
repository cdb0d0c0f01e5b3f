from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import HTTPException
from fastapi.responses import JSONResponse, Response

from ..api_models import PillsResponse, RegenerateRequest, SendMessageRequest, StudyToolRequest
from ..container import AppContainer
from ..context_window import ConversationMessage, build_prompt
from ..generation_pipeline import (
    GenerationChannel,
    StreamToken,
    conversation_summarizer,
    run_summary,
    start_generation,
    stream_deadline,
    stream_text,
)
from ..pills_service import generate_comprehension_pills, latest_assistant_text
from ..prompts import GenerationContext, build_tutor_system_prompt, infer_academic_level
from ..rate_limit import rate_limited_response
from ..session_store import SessionRecord
from ..sse_transport import event_stream_response
from ..study_tools_service import FLASHCARDS_MESSAGE, QUIZ_MESSAGE, generate_flashcards, generate_quiz
from ..summary_cache import CacheScope, SummaryCacheEntry, clamp_depth

_log = logging.getLogger(__name__)

DEFAULT_TOPIC_NAME = "General"
DEFAULT_COURSE_NAME = "Course"


@dataclass(frozen=True)
class TutorHandlerDeps:
    container: AppContainer
    run_in_threadpool: Callable[..., Any]
    diag_log: Callable[..., None]


def require_user(user_id: Optional[str]) -> str:
    value = str(user_id or "").strip()
    if not value:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return value


async def _load_session(session_id: str, user_id: str, deps: TutorHandlerDeps) -> SessionRecord:
    session = await deps.run_in_threadpool(deps.container.store.load_session, session_id, user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Not found")
    return session


def _check_rate_limit(key: str, limit: int, message: str, deps: TutorHandlerDeps) -> Optional[JSONResponse]:
    c = deps.container
    result = c.rate_limiter.check(key, limit, c.rate_limits.window_ms)
    if not result.limited:
        return None
    deps.diag_log("rate_limit.rejected", {"key": key.split(":", 1)[0], "retry_after": result.retry_after_seconds})
    return rate_limited_response(result, message)


def _resolve_handle(deps: TutorHandlerDeps, model_id: Optional[str]) -> Any:
    try:
        return deps.container.registry.resolve(model_id or None)
    except KeyError:
        raise HTTPException(status_code=400, detail="unknown model_id")


def _generation_context(c: AppContainer, session: SessionRecord, depth: int) -> GenerationContext:
    course = c.store.load_course_context(session.course_id)
    return GenerationContext(
        course_name=course.name if course else DEFAULT_COURSE_NAME,
        topic_name=c.store.load_topic_name(session.course_id, session.topic_id) or DEFAULT_TOPIC_NAME,
        chapter_name=c.store.load_chapter_name(session.course_id, session.chapter_id),
        depth=depth,
        goal=course.goal if course else None,
        year_of_study=course.year_of_study if course else None,
        exam_name=course.exam_name if course else None,
    )


def _idle_timeout(c: AppContainer) -> float:
    return float(c.stream_deadline_sec) + 30.0


async def new_reply(session_id: str, user_id: Optional[str], req: SendMessageRequest, *, deps: TutorHandlerDeps) -> Response:
    user = require_user(user_id)
    message = str(req.message or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="message is required")
    c = deps.container
    limited = _check_rate_limit(
        f"session-llm:{user}:{session_id}",
        c.rate_limits.session_llm_per_window,
        "Too many requests. Please wait a moment before sending another message.",
        deps,
    )
    if limited is not None:
        return limited
    session = await _load_session(session_id, user, deps)
    handle = _resolve_handle(deps, req.model_id)
    depth = clamp_depth(req.depth or 1)

    def _prepare() -> Tuple[GenerationContext, List[ConversationMessage]]:
        ctx = _generation_context(c, session, depth)
        history = c.store.load_history(session.session_id)
        c.store.append_message(session.session_id, role="user", content=message)
        return ctx, history

    ctx, history = await deps.run_in_threadpool(_prepare)
    deadline = stream_deadline(c.stream_deadline_sec)

    def _produce(channel: GenerationChannel) -> Dict[str, Any]:
        messages = build_prompt(
            build_tutor_system_prompt(ctx),
            history,
            message,
            summarize=conversation_summarizer(handle),
        )
        text = stream_text(handle, messages, channel, deadline=deadline)
        # persisted before ``done`` so a follow-up pills request sees it
        saved = c.store.append_message(session.session_id, role="assistant", content=text, depth=depth)
        return {"depth": depth, "messageId": saved.id}

    channel = GenerationChannel(maxsize=c.channel_max_items)
    start_generation(channel, _produce, kind="reply", observability=c.observability)
    return event_stream_response(channel, idle_timeout_sec=_idle_timeout(c))


def locate_regeneration_turn(
    history: List[ConversationMessage], message_index: int
) -> Tuple[ConversationMessage, ConversationMessage, List[ConversationMessage]]:
    """Return (target assistant message, prior user message, history before that user turn).

    ``message_index`` counts non-system messages only.
    """
    dialog = [m for m in history if m.role != "system"]
    if message_index < 0 or message_index >= len(dialog):
        raise HTTPException(status_code=400, detail="messageIndex out of range")
    target = dialog[message_index]
    if target.role != "assistant":
        raise HTTPException(status_code=400, detail="messageIndex must reference an assistant message")
    for idx in range(message_index - 1, -1, -1):
        if dialog[idx].role == "user":
            return target, dialog[idx], dialog[:idx]
    raise HTTPException(status_code=400, detail="no user message precedes messageIndex")


async def regenerate(session_id: str, user_id: Optional[str], req: RegenerateRequest, *, deps: TutorHandlerDeps) -> Response:
    user = require_user(user_id)
    if req.messageIndex is None:
        raise HTTPException(status_code=400, detail="messageIndex is required")
    c = deps.container
    limited = _check_rate_limit(
        f"session-llm:{user}:{session_id}",
        c.rate_limits.session_llm_per_window,
        "Too many requests. Please wait a moment before regenerating.",
        deps,
    )
    if limited is not None:
        return limited
    session = await _load_session(session_id, user, deps)
    handle = _resolve_handle(deps, req.model_id)
    depth = clamp_depth(req.depth or 1)

    def _prepare() -> Tuple[GenerationContext, List[ConversationMessage]]:
        return _generation_context(c, session, depth), c.store.load_history(session.session_id)

    ctx, history = await deps.run_in_threadpool(_prepare)
    target, user_turn, prior = locate_regeneration_turn(history, int(req.messageIndex))
    deadline = stream_deadline(c.stream_deadline_sec)
    produced: Dict[str, str] = {}

    def _produce(channel: GenerationChannel) -> Dict[str, Any]:
        messages = build_prompt(
            build_tutor_system_prompt(ctx),
            prior,
            user_turn.content,
            summarize=conversation_summarizer(handle),
        )
        text = stream_text(handle, messages, channel, deadline=deadline)
        produced["text"] = text
        return {"depth": depth, "messageIndex": int(req.messageIndex), "content": text}

    def _overwrite() -> None:
        c.background.submit(
            c.store.overwrite_message,
            session.session_id,
            target.id,
            produced["text"],
            depth=depth,
            failure_event="regenerate.overwrite_failed",
        )

    channel = GenerationChannel(maxsize=c.channel_max_items)
    start_generation(channel, _produce, kind="regenerate", observability=c.observability, on_done=_overwrite)
    return event_stream_response(channel, idle_timeout_sec=_idle_timeout(c))


def _cached_summary(c: AppContainer, user: str, scope: CacheScope, depth: int) -> Optional[SummaryCacheEntry]:
    try:
        return c.summary_cache.get(user, scope, depth)
    except Exception:
        _log.warning("summary cache read failed; regenerating", exc_info=True)
        return None


async def summary(
    session_id: str,
    user_id: Optional[str],
    raw_depth: Optional[int],
    force: bool,
    *,
    deps: TutorHandlerDeps,
) -> Response:
    user = require_user(user_id)
    c = deps.container
    limited = _check_rate_limit(
        f"summary:{user}:{session_id}",
        c.rate_limits.summary_per_window,
        "Too many summary requests. Please wait a moment.",
        deps,
    )
    if limited is not None:
        return limited
    session = await _load_session(session_id, user, deps)

    scopes = CacheScope.candidates(session.topic_id, session.chapter_id)
    scope = scopes[0] if scopes else None

    def _prepare() -> Tuple[int, Optional[SummaryCacheEntry], GenerationContext]:
        try:
            depth = c.summary_cache.resolve_depth(user, scopes, raw_depth)
        except Exception:
            _log.warning("last-depth lookup failed; using requested depth", exc_info=True)
            depth = clamp_depth(raw_depth or 1)
        cached = _cached_summary(c, user, scope, depth) if (scope is not None and not force) else None
        return depth, cached, _generation_context(c, session, depth)

    depth, cached, ctx = await deps.run_in_threadpool(_prepare)
    if cached is not None:
        deps.diag_log("summary.cache_hit", {"scope": scope.kind if scope else "", "depth": depth})
        channel = GenerationChannel.from_tokens(
            [StreamToken.chunk(cached.summary), StreamToken.done(cached.done_payload(depth))]
        )
        return event_stream_response(channel)

    handle = _resolve_handle(deps, None)
    deadline = stream_deadline(c.stream_deadline_sec)
    produced: Dict[str, SummaryCacheEntry] = {}

    def _produce(channel: GenerationChannel) -> Dict[str, Any]:
        result = run_summary(handle, ctx, channel, deadline=deadline)
        entry = SummaryCacheEntry.from_payload(result.to_cache_payload())
        produced["entry"] = entry
        return entry.done_payload(depth)

    def _write_cache() -> None:
        if scope is None:
            return
        c.background.submit(
            c.summary_cache.put, user, scope, depth, produced["entry"], failure_event="summary.cache_write_failed"
        )

    channel = GenerationChannel(maxsize=c.channel_max_items)
    start_generation(channel, _produce, kind="summary", observability=c.observability, on_done=_write_cache)
    return event_stream_response(channel, idle_timeout_sec=_idle_timeout(c))


async def pills(session_id: str, user_id: Optional[str], *, deps: TutorHandlerDeps) -> Any:
    user = require_user(user_id)
    c = deps.container
    limited = _check_rate_limit(
        f"pills:{user}:{session_id}",
        c.rate_limits.pills_per_window,
        "Too many comprehension checks. Please wait a moment.",
        deps,
    )
    if limited is not None:
        return limited
    session = await _load_session(session_id, user, deps)

    history = await deps.run_in_threadpool(c.store.load_history, session.session_id)
    source = latest_assistant_text(history)
    if source is None:
        return PillsResponse()

    handle = _resolve_handle(deps, None)

    def _generate() -> Dict[str, Any]:
        course = c.store.load_course_context(session.course_id)
        level = infer_academic_level(
            course.year_of_study if course else None,
            course.name if course else None,
        )
        topic = c.store.load_topic_name(session.course_id, session.topic_id) or DEFAULT_TOPIC_NAME
        return generate_comprehension_pills(handle, source.content, topic, level.label).to_payload()

    try:
        payload = await deps.run_in_threadpool(_generate)
    except Exception as exc:
        _log.exception("pills generation failed session_id=%s", session.session_id)
        deps.diag_log("pills.failed", {"error": type(exc).__name__})
        return JSONResponse(status_code=502, content={"error": "Could not generate comprehension check."})
    return PillsResponse(sourceMessageId=source.id or None, **payload)


def _topic_context(c: AppContainer, session: SessionRecord) -> Tuple[str, str]:
    topic = c.store.load_topic_name(session.course_id, session.topic_id) or DEFAULT_TOPIC_NAME
    chapter = c.store.load_chapter_name(session.course_id, session.chapter_id)
    return topic, (f"{topic} > {chapter}" if chapter else topic)


async def _study_tool(
    session_id: str,
    user_id: Optional[str],
    req: StudyToolRequest,
    *,
    kind: str,
    deps: TutorHandlerDeps,
) -> Any:
    user = require_user(user_id)
    c = deps.container
    limited = _check_rate_limit(
        f"session-llm:{user}:{session_id}",
        c.rate_limits.session_llm_per_window,
        "Too many requests. Please wait a moment.",
        deps,
    )
    if limited is not None:
        return limited
    session = await _load_session(session_id, user, deps)
    handle = _resolve_handle(deps, req.model_id)

    def _generate() -> Dict[str, Any]:
        history = c.store.load_history(session.session_id)
        topic, topic_context = _topic_context(c, session)
        if kind == "quiz":
            items = [q.to_payload() for q in generate_quiz(handle, topic, history)]
            field, content = "questions", QUIZ_MESSAGE
        else:
            items = [card.to_payload() for card in generate_flashcards(handle, topic_context, history)]
            field, content = "cards", FLASHCARDS_MESSAGE
        saved = c.store.append_message(
            session.session_id,
            role="assistant",
            content=content,
            content_type=kind,
            data={field: items},
        )
        return {"id": saved.id, field: items}

    try:
        return await deps.run_in_threadpool(_generate)
    except Exception as exc:
        _log.exception("%s generation failed session_id=%s", kind, session.session_id)
        deps.diag_log(f"{kind}.failed", {"error": type(exc).__name__})
        return JSONResponse(status_code=502, content={"error": f"Could not generate {kind}."})


async def quiz(session_id: str, user_id: Optional[str], req: StudyToolRequest, *, deps: TutorHandlerDeps) -> Any:
    return await _study_tool(session_id, user_id, req, kind="quiz", deps=deps)


async def flashcards(session_id: str, user_id: Optional[str], req: StudyToolRequest, *, deps: TutorHandlerDeps) -> Any:
    return await _study_tool(session_id, user_id, req, kind="flashcards", deps=deps)
