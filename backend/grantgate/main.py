from contextlib import asynccontextmanager
from functools import lru_cache
import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from grantgate.api.routers.analysis import build_analysis_router
from grantgate.api.routers.checklist import build_checklist_router
from grantgate.api.routers.export import build_export_router
from grantgate.api.routers.placeholders import build_placeholders_router
from grantgate.api.routers.proposals import build_proposals_router
from grantgate.api.routers.system import build_system_router
from grantgate.api.services.runtime import GateServices
from grantgate.config import GateConfig, settings
from grantgate.db import Database
from grantgate.errors import GateError
from grantgate.observability import (
    configure_logging,
    normalize_request_id,
    reset_request_id,
    sanitize_for_logging,
    set_request_id,
)
from grantgate.retrieval import HttpRetriever, Retriever, build_retriever
from grantgate.version import APP_VERSION

logger = logging.getLogger("grantgate.api")


@lru_cache(maxsize=1)
def _cached_retriever() -> Retriever:
    return build_retriever(
        retrieval_url=settings.retrieval_url,
        api_key=settings.retrieval_api_key,
        timeout_seconds=settings.retrieval_timeout_seconds,
    )


def get_retriever() -> Retriever:
    return _cached_retriever()


async def close_retriever() -> None:
    if not _cached_retriever.cache_info().currsize:
        return
    retriever = _cached_retriever()
    if isinstance(retriever, HttpRetriever):
        await retriever.aclose()


def get_database() -> Database:
    return Database.from_url(settings.database_url)


def get_gate_config() -> GateConfig:
    return GateConfig.from_settings(settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    logger.info("application_startup", extra={"event": "application_startup", "environment": settings.app_env})
    get_database().init_schema()
    yield
    await close_retriever()
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def create_app() -> FastAPI:
    cors_origins = settings.cors_origins_list
    if settings.cors_allow_credentials and any(origin == "*" for origin in cors_origins):
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    app = FastAPI(title=settings.app_name, version=APP_VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Authorization", "Content-Type", settings.request_id_header],
    )

    @app.exception_handler(GateError)
    async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
        logger.warning(
            "request_rejected",
            extra={
                "event": "request_rejected",
                "path": request.url.path,
                "status_code": exc.status_code,
                "error": type(exc).__name__,
            },
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = normalize_request_id(request.headers.get(settings.request_id_header))
        request.state.request_id = request_id
        token = set_request_id(request_id)
        started = time.perf_counter()

        logger.info(
            "request_started",
            extra={
                "event": "request_started",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": sanitize_for_logging(dict(request.query_params)),
                "client_ip": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            response.headers[settings.request_id_header] = request_id
            logger.info(
                "request_completed",
                extra={
                    "event": "request_completed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
            )
            return response
        except Exception:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.exception(
                "request_failed",
                extra={
                    "event": "request_failed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": elapsed_ms,
                },
            )
            raise
        finally:
            reset_request_id(token)

    # Getters are looked up at call time so tests can monkeypatch them on this module.
    services = GateServices(
        get_database=lambda: get_database(),
        get_retriever=lambda: get_retriever(),
        get_gate_config=lambda: get_gate_config(),
    )
    app.include_router(
        build_system_router(get_database=lambda: get_database(), get_retriever=lambda: get_retriever())
    )
    app.include_router(build_proposals_router(services=services))
    app.include_router(build_placeholders_router(services=services))
    app.include_router(build_analysis_router(services=services))
    app.include_router(build_checklist_router(services=services))
    app.include_router(build_export_router(services=services))
    return app


app = create_app()
