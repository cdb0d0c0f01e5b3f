from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Header, Query
from starlette.concurrency import run_in_threadpool

from ..api_models import RegenerateRequest, SendMessageRequest, StudyToolRequest
from ..container import AppContainer
from ..diagnostics import diag_log
from ..handlers import tutor_handlers
from ..handlers.tutor_handlers import TutorHandlerDeps


def _tutor_deps(container: AppContainer) -> TutorHandlerDeps:
    return TutorHandlerDeps(container=container, run_in_threadpool=run_in_threadpool, diag_log=diag_log)


def build_router(container: AppContainer) -> APIRouter:
    router = APIRouter()

    @router.post("/sessions/{session_id}/messages")
    async def send_message(
        session_id: str,
        req: SendMessageRequest,
        x_user_id: Optional[str] = Header(None),
    ) -> Any:
        return await tutor_handlers.new_reply(session_id, x_user_id, req, deps=_tutor_deps(container))

    @router.post("/sessions/{session_id}/regenerate")
    async def regenerate_message(
        session_id: str,
        req: RegenerateRequest,
        x_user_id: Optional[str] = Header(None),
    ) -> Any:
        return await tutor_handlers.regenerate(session_id, x_user_id, req, deps=_tutor_deps(container))

    @router.get("/sessions/{session_id}/summary")
    async def session_summary(
        session_id: str,
        depth: int = Query(0),
        force: bool = Query(False),
        x_user_id: Optional[str] = Header(None),
    ) -> Any:
        return await tutor_handlers.summary(session_id, x_user_id, depth, force, deps=_tutor_deps(container))

    @router.get("/sessions/{session_id}/pills")
    async def session_pills(session_id: str, x_user_id: Optional[str] = Header(None)) -> Any:
        return await tutor_handlers.pills(session_id, x_user_id, deps=_tutor_deps(container))

    @router.post("/sessions/{session_id}/quiz")
    async def session_quiz(
        session_id: str,
        req: Optional[StudyToolRequest] = None,
        x_user_id: Optional[str] = Header(None),
    ) -> Any:
        return await tutor_handlers.quiz(session_id, x_user_id, req or StudyToolRequest(), deps=_tutor_deps(container))

    @router.post("/sessions/{session_id}/flashcards")
    async def session_flashcards(
        session_id: str,
        req: Optional[StudyToolRequest] = None,
        x_user_id: Optional[str] = Header(None),
    ) -> Any:
        return await tutor_handlers.flashcards(
            session_id, x_user_id, req or StudyToolRequest(), deps=_tutor_deps(container)
        )

    return router
