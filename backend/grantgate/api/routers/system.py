from __future__ import annotations

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from grantgate.api.services.runtime import DatabaseGetter, RetrieverGetter
from grantgate.config import settings
from grantgate.retrieval import UnavailableRetriever
from grantgate.version import APP_VERSION


_READY_CACHE_TTL_SECONDS = 30.0
_ready_cache: dict[str, object] = {
    "ts": 0.0,
    "ok": None,
    "payload": None,
}


def _database_backend_label(database_url: str) -> str:
    url = (database_url or "").strip().lower()
    if url.startswith("sqlite:///"):
        return "sqlite"
    return "unknown"


def _cache_set(ok: bool, payload: dict[str, object]) -> None:
    _ready_cache["ts"] = time.time()
    _ready_cache["ok"] = ok
    _ready_cache["payload"] = payload


def _cache_get() -> dict[str, object] | None:
    now = time.time()
    ts = float(_ready_cache.get("ts") or 0.0)
    if now - ts > _READY_CACHE_TTL_SECONDS:
        return None
    payload = _ready_cache.get("payload")
    if isinstance(payload, dict):
        return payload
    return None


def reset_ready_cache() -> None:
    _ready_cache["ts"] = 0.0
    _ready_cache["ok"] = None
    _ready_cache["payload"] = None


def build_system_router(*, get_database: DatabaseGetter, get_retriever: RetrieverGetter) -> APIRouter:
    router = APIRouter()

    @router.get("/")
    def root() -> dict[str, str]:
        return {"service": "grantgate-backend", "status": "running", "version": APP_VERSION}

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.app_env}

    @router.get("/ready", response_model=None)
    def ready() -> JSONResponse:
        cached = _cache_get()
        if cached is not None:
            ok = bool(_ready_cache.get("ok"))
            return JSONResponse(status_code=200 if ok else 503, content=cached)

        payload: dict[str, object] = {
            "status": "ready",
            "environment": settings.app_env,
            "checks": {},
        }

        try:
            with get_database().get_conn() as conn:
                conn.execute("SELECT 1").fetchone()
            payload["checks"]["db"] = {
                "ok": True,
                "backend": _database_backend_label(settings.database_url),
            }
        except Exception as exc:
            payload["status"] = "not_ready"
            payload["checks"]["db"] = {
                "ok": False,
                "backend": _database_backend_label(settings.database_url),
                "error": str(exc),
            }
            _cache_set(False, payload)
            return JSONResponse(status_code=503, content=payload)

        # An unconfigured retriever is not fatal: the gate degrades to UNVERIFIED/FAILED signals.
        configured = not isinstance(get_retriever(), UnavailableRetriever)
        payload["checks"]["retrieval"] = {"ok": True, "configured": configured}

        _cache_set(True, payload)
        return JSONResponse(status_code=200, content=payload)

    return router
