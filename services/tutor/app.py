from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import CORS_ORIGINS
from .container import AppContainer, build_app_container
from .logging_config import configure_logging
from .request_context import REQUEST_ID, REQUEST_ID_HEADER, accept_request_id, new_request_id
from .routes.ops_routes import build_ops_router
from .routes.tutor_routes import build_router

_log = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(_app: FastAPI):
    configure_logging()
    try:
        yield
    finally:
        try:
            _app.state.container.background.shutdown(wait=False)
        except Exception:
            _log.error("background runner shutdown error", exc_info=True)


def create_app(container: Optional[AppContainer] = None) -> FastAPI:
    container = container or build_app_container()
    app = FastAPI(title="Tutor Generation API", version="0.1.0", lifespan=app_lifespan)
    app.state.container = container

    origins_list = [o.strip() for o in CORS_ORIGINS.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _bind_request_id(request: Request, call_next):
        request_id = accept_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        token = REQUEST_ID.set(request_id)
        try:
            response = await call_next(request)
        finally:
            REQUEST_ID.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "") or REQUEST_ID.get("") or new_request_id()
        _log.error("unhandled error path=%s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "request_id": request_id},
            headers={REQUEST_ID_HEADER: request_id},
        )

    app.include_router(build_router(container))
    app.include_router(build_ops_router(container))
    return app


app = create_app()


def main() -> None:
    import uvicorn

    from . import settings

    uvicorn.run("services.tutor.app:app", host=settings.api_host(), port=settings.api_port(), log_config=None)


if __name__ == "__main__":
    main()
