from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from pathgate.api.assessments import router as assessments_router
from pathgate.api.events import router as events_router
from pathgate.api.health import router as health_router
from pathgate.api.learners import router as learners_router
from pathgate.api.progress import router as progress_router
from pathgate.api.roadmaps import router as roadmaps_router
from pathgate.core.errors import (
    PathgateError,
    http_exception_handler,
    pathgate_exception_handler,
    request_id_middleware,
    unhandled_exception_handler,
    validation_exception_handler,
)
from pathgate.core.logging import configure_logging
from pathgate.core.settings import Settings, settings
from pathgate.services.container import ServiceContainer, build_container


def create_app(config: Settings | None = None, services: ServiceContainer | None = None) -> FastAPI:
    config = config or settings
    configure_logging(config.log_level)

    app = FastAPI(title="Pathgate API", version="0.1.0")
    app.state.services = services or build_container(config)

    app.include_router(health_router)
    app.include_router(learners_router)
    app.include_router(progress_router)
    app.include_router(assessments_router)
    app.include_router(roadmaps_router)
    app.include_router(events_router)
    app.middleware("http")(request_id_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PathgateError, pathgate_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.on_event("startup")
    async def on_startup():
        await app.state.services.startup()

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.services.shutdown()

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("pathgate.main:app", host=settings.app_host, port=settings.app_port, log_level=settings.log_level.lower())
