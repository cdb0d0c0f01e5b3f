"""Producer side of streamed generations.

A generation runs in its own worker thread and writes ``StreamToken`` values
into a bounded ``GenerationChannel``. The HTTP layer drains the channel and
frames each token as a server-sent event. Cancelling the channel (client gone)
makes the producer stop at the next chunk boundary and close the provider
response.

Every channel carries zero or more ``chunk`` tokens followed by exactly one
terminal token (``done`` or ``error``); anything put after the terminal token
is dropped.
"""
from __future__ import annotations

import contextvars
import logging
import queue
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from llm_gateway import GenerationCancelled, UnifiedLLMRequest

from .config import LLM_STREAM_DEADLINE_SEC, STREAM_CHANNEL_MAX_ITEMS
from .diagnostics import diag_log
from .observability import GenerationObservability
from .prompts import (
    GenerationContext,
    build_summary_interactive_prompt,
    build_summary_prose_prompt,
    summary_transcript_messages,
)
from .structured_output import InteractiveElements, parse_interactive_elements

_log = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong while generating a response. Please try again."

SUMMARY_PROSE_MAX_TOKENS = 1500
SUMMARY_INTERACTIVE_MAX_TOKENS = 500
SUMMARY_INTERACTIVE_TEMPERATURE = 0.5
CONVERSATION_SUMMARY_MAX_TOKENS = 512
CONVERSATION_SUMMARY_TEMPERATURE = 0.3

_PUT_POLL_SEC = 0.1


@dataclass(frozen=True)
class StreamToken:
    type: str
    content: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    message: str = ""

    @classmethod
    def chunk(cls, content: str) -> "StreamToken":
        return cls(type="chunk", content=content)

    @classmethod
    def done(cls, payload: Optional[Dict[str, Any]] = None) -> "StreamToken":
        return cls(type="done", payload=dict(payload or {}))

    @classmethod
    def error(cls, message: str = GENERIC_ERROR_MESSAGE) -> "StreamToken":
        return cls(type="error", message=message)

    @property
    def terminal(self) -> bool:
        return self.type in {"done", "error"}

    def to_event(self) -> Dict[str, Any]:
        if self.type == "chunk":
            return {"type": "chunk", "content": self.content}
        if self.type == "done":
            event: Dict[str, Any] = {"type": "done"}
            event.update({k: v for k, v in self.payload.items() if k != "type"})
            return event
        return {"type": "error", "message": self.message}


class GenerationChannel:
    def __init__(self, maxsize: int = STREAM_CHANNEL_MAX_ITEMS) -> None:
        self._queue: "queue.Queue[StreamToken]" = queue.Queue(maxsize=max(1, int(maxsize)))
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._terminated = False
        self._created_at = time.monotonic()
        self.first_chunk_sec: Optional[float] = None
        self._listener: Optional[Callable[[], None]] = None

    @classmethod
    def from_tokens(cls, tokens: Iterable[StreamToken]) -> "GenerationChannel":
        items = list(tokens)
        channel = cls(maxsize=len(items) + 1)
        for token in items:
            channel.put(token)
        return channel

    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()
        self._notify()

    def set_listener(self, listener: Optional[Callable[[], None]]) -> None:
        """Register a callable invoked from the producer thread after every enqueue.

        The listener must not block; async consumers hand it a
        ``loop.call_soon_threadsafe`` wrapper.
        """
        with self._lock:
            self._listener = listener

    def _notify(self) -> None:
        with self._lock:
            listener = self._listener
        if listener is None:
            return
        try:
            listener()
        except RuntimeError:
            # event loop already closed
            _log.debug("channel listener unavailable", exc_info=True)

    @property
    def terminated(self) -> bool:
        with self._lock:
            return self._terminated

    def put(self, token: StreamToken) -> bool:
        """Enqueue ``token``; returns False if it was dropped."""
        with self._lock:
            if self._terminated:
                return False
            if token.terminal:
                self._terminated = True
            elif self.first_chunk_sec is None:
                self.first_chunk_sec = time.monotonic() - self._created_at
        while not self._cancel.is_set():
            try:
                self._queue.put(token, timeout=_PUT_POLL_SEC)
                self._notify()
                return True
            except queue.Full:
                continue
        return False

    def get(self, timeout: Optional[float] = None) -> StreamToken:
        return self._queue.get(timeout=timeout)

    def get_nowait(self) -> Optional[StreamToken]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def iter_tokens(self, timeout: Optional[float] = None) -> Iterator[StreamToken]:
        while True:
            token = self.get(timeout=timeout)
            yield token
            if token.terminal:
                return


Producer = Callable[[GenerationChannel], Optional[Dict[str, Any]]]


def start_generation(
    channel: GenerationChannel,
    produce: Producer,
    *,
    kind: str,
    observability: Optional[GenerationObservability] = None,
    on_done: Optional[Callable[[], None]] = None,
) -> threading.Thread:
    """Run ``produce`` in a worker thread, finishing the channel with one terminal token.

    The return value of ``produce`` becomes the ``done`` payload. Any exception
    becomes a generic ``error`` token; details go to the log only. ``on_done``
    runs after the ``done`` token has been handed to the channel and only when
    ``produce`` succeeded; it is the place for deferred persistence.
    """
    ctx = contextvars.copy_context()
    started = time.monotonic()
    if observability is not None:
        observability.record_started(kind)
    diag_log("generation.started", {"kind": kind})

    def _finish(outcome: str) -> None:
        # must run before the terminal token is emitted
        total = time.monotonic() - started
        if observability is not None:
            observability.record_finished(kind, outcome, first_chunk_sec=channel.first_chunk_sec, total_sec=total)
        if outcome == "done":
            diag_log("generation.finished", {"kind": kind, "total_sec": round(total, 3)})

    def _run() -> None:
        try:
            payload = produce(channel)
        except GenerationCancelled:
            _log.info("generation cancelled kind=%s", kind)
            _finish("cancelled")
            return
        except Exception as exc:
            _log.exception("generation failed kind=%s", kind)
            diag_log("generation.failed", {"kind": kind, "error": type(exc).__name__, "detail": str(exc)[:200]})
            _finish("cancelled" if channel.cancelled() else "error")
            channel.put(StreamToken.error(GENERIC_ERROR_MESSAGE))
            return
        _finish("cancelled" if channel.cancelled() else "done")
        channel.put(StreamToken.done(payload))
        if on_done is None:
            return
        try:
            on_done()
        except Exception as exc:
            _log.exception("post-generation hook failed kind=%s", kind)
            diag_log("generation.on_done_failed", {"kind": kind, "error": type(exc).__name__})

    thread = threading.Thread(target=ctx.run, args=(_run,), name=f"generation-{kind}", daemon=True)
    thread.start()
    return thread


def stream_deadline(seconds: float = LLM_STREAM_DEADLINE_SEC) -> float:
    return time.monotonic() + max(1.0, float(seconds))


def stream_text(
    handle: Any,
    messages: List[Dict[str, str]],
    channel: GenerationChannel,
    *,
    deadline: Optional[float] = None,
    temperature: float = 0.7,
    max_tokens: int = 2048,
) -> str:
    """Forward provider deltas into ``channel`` in order and return their concatenation."""
    req = UnifiedLLMRequest(messages=messages, temperature=temperature, max_tokens=max_tokens, stream=True)
    parts: List[str] = []
    stream = handle.generate_stream(req, should_stop=channel.cancelled, deadline=deadline)
    with closing(stream):
        for chunk in stream:
            if not chunk:
                continue
            parts.append(chunk)
            if not channel.put(StreamToken.chunk(chunk)):
                raise GenerationCancelled("client disconnected")
    return "".join(parts)


def conversation_summarizer(handle: Any) -> Callable[[str], str]:
    def _summarize(transcript: str) -> str:
        resp = handle.generate(
            UnifiedLLMRequest(
                messages=summary_transcript_messages(transcript),
                temperature=CONVERSATION_SUMMARY_TEMPERATURE,
                max_tokens=CONVERSATION_SUMMARY_MAX_TOKENS,
            )
        )
        return str(resp.text or "").strip()

    return _summarize


def generate_interactive_elements(handle: Any, ctx: GenerationContext) -> InteractiveElements:
    """One non-streaming call for the comprehension question and starters; never raises."""
    try:
        resp = handle.generate(
            UnifiedLLMRequest(
                messages=[
                    {"role": "system", "content": build_summary_interactive_prompt(ctx)},
                    {"role": "user", "content": "Generate the interactive elements."},
                ],
                temperature=SUMMARY_INTERACTIVE_TEMPERATURE,
                max_tokens=SUMMARY_INTERACTIVE_MAX_TOKENS,
            )
        )
    except Exception:
        _log.warning("interactive elements call failed; using defaults", exc_info=True)
        return InteractiveElements()
    return parse_interactive_elements(resp.text)


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    interactive: InteractiveElements

    def to_cache_payload(self) -> Dict[str, Any]:
        payload = self.interactive.to_payload()
        payload["summary"] = self.summary
        return payload


def run_summary(
    handle: Any,
    ctx: GenerationContext,
    channel: GenerationChannel,
    *,
    deadline: Optional[float] = None,
) -> SummaryResult:
    """Stream the prose summary, then fetch the structured follow-up once the prose has drained."""
    prose = stream_text(
        handle,
        [
            {"role": "system", "content": build_summary_prose_prompt(ctx)},
            {"role": "user", "content": "Write the summary."},
        ],
        channel,
        deadline=deadline,
        max_tokens=SUMMARY_PROSE_MAX_TOKENS,
    )
    if channel.cancelled():
        raise GenerationCancelled("client disconnected")
    return SummaryResult(summary=prose, interactive=generate_interactive_elements(handle, ctx))
