from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict

from fastapi.responses import StreamingResponse

from .generation_pipeline import GENERIC_ERROR_MESSAGE, GenerationChannel, StreamToken

_log = logging.getLogger(__name__)

SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_sse_event(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


async def sse_event_stream(channel: GenerationChannel, *, idle_timeout_sec: float | None = None) -> AsyncIterator[str]:
    """Frame channel tokens as SSE events until the terminal one.

    The producer thread wakes this coroutine through ``call_soon_threadsafe``,
    so an idle stream holds no worker thread. Closing this generator (client
    disconnect) cancels the channel so the producer stops at its next chunk
    boundary.
    """
    loop = asyncio.get_running_loop()
    ready = asyncio.Event()
    channel.set_listener(lambda: loop.call_soon_threadsafe(ready.set))
    last_activity = loop.time()
    try:
        while True:
            ready.clear()
            token = channel.get_nowait()
            if token is None:
                if channel.cancelled():
                    return
                timeout = None
                if idle_timeout_sec is not None:
                    timeout = idle_timeout_sec - (loop.time() - last_activity)
                    if timeout <= 0:
                        _log.warning("stream idle for %.0fs; closing with error", idle_timeout_sec)
                        yield encode_sse_event(StreamToken.error(GENERIC_ERROR_MESSAGE).to_event())
                        return
                try:
                    await asyncio.wait_for(ready.wait(), timeout)
                except asyncio.TimeoutError:
                    pass
                continue
            last_activity = loop.time()
            yield encode_sse_event(token.to_event())
            if token.terminal:
                return
    finally:
        channel.set_listener(None)
        channel.cancel()


def event_stream_response(channel: GenerationChannel, *, idle_timeout_sec: float | None = None) -> StreamingResponse:
    return StreamingResponse(
        sse_event_stream(channel, idle_timeout_sec=idle_timeout_sec),
        media_type=SSE_MEDIA_TYPE,
        headers=dict(SSE_HEADERS),
    )
