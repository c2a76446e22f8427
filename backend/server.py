import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from owl.api import chat as chat_api
from owl.api import models as models_api
from owl.api import sandbox as sandbox_api
from owl.config import OwlSettings, configure_logging
from owl.errors import CompletionFailed, NoEnvironment, OwlError, ProvisionFailed
from owl.service import OwlService


logger = logging.getLogger("owl.server")


def _error_response(status_code: int, exc: OwlError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind, "message": str(exc), "sessionId": exc.session_key},
    )


def create_app(service: OwlService | None = None, settings: OwlSettings | None = None) -> FastAPI:
    """Build the API app. Pass ``service`` to run against injected ports (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            resolved = settings or OwlSettings.from_env()
            configure_logging(resolved.log_level)
            resolved.validate_timing()
            app.state.service = OwlService.from_settings(resolved)
            logger.info(
                "startup model=%s runtime=%s budget_s=%.0f keepalive_s=%.0f max_rounds=%d",
                resolved.model,
                resolved.runtime,
                resolved.lifetime_budget_seconds,
                resolved.keepalive_interval_seconds,
                resolved.max_rounds,
            )
        try:
            yield
        finally:
            await app.state.service.shutdown()

    app = FastAPI(title="Owl", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NoEnvironment)
    async def _no_environment(_req: Request, exc: NoEnvironment) -> JSONResponse:
        return _error_response(409, exc)

    @app.exception_handler(ProvisionFailed)
    async def _provision_failed(_req: Request, exc: ProvisionFailed) -> JSONResponse:
        return _error_response(502, exc)

    @app.exception_handler(CompletionFailed)
    async def _completion_failed(_req: Request, exc: CompletionFailed) -> JSONResponse:
        return _error_response(502, exc)

    @app.exception_handler(OwlError)
    async def _owl_error(_req: Request, exc: OwlError) -> JSONResponse:
        logger.error("unhandled %s for session %s: %s", exc.kind, exc.session_key, exc)
        return _error_response(500, exc)

    app.include_router(chat_api.router)
    app.include_router(sandbox_api.router)
    app.include_router(models_api.router)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.get("/")
    def read_root() -> dict[str, str]:
        return {"Hello": "Owl"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=3001)
