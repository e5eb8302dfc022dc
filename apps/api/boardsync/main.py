from __future__ import annotations

import logging
from time import monotonic

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.trustedhost import TrustedHostMiddleware

from boardsync.config import settings
from boardsync.db import SessionLocal, engine
from boardsync.errors import AssignmentContendedError, BoardSyncError, InternalError, RateLimitedError
from boardsync.metrics import runtime_metrics
from boardsync.models import User
from boardsync.realtime.hub import BroadcastHub
from boardsync.routers.activity import router as activity_router
from boardsync.routers.auth import router as auth_router
from boardsync.routers.boards import router as boards_router
from boardsync.routers.realtime import router as realtime_router
from boardsync.routers.tasks import router as tasks_router

logging.basicConfig(
  level=getattr(logging, settings.log_level.upper(), logging.INFO),
  format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("boardsync")

app = FastAPI(
  title="boardsync API",
  version="0.1.0",
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)

# Created at import so in-process test transports (which skip lifespan) see it too.
app.state.hub = BroadcastHub()


@app.exception_handler(BoardSyncError)
async def _boardsync_error_handler(_: Request, exc: BoardSyncError) -> JSONResponse:
  retryable = isinstance(exc, (RateLimitedError, AssignmentContendedError))
  headers = {"Retry-After": str(exc.retry_after)} if retryable else None
  return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=headers)


@app.exception_handler(SQLAlchemyError)
async def _store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
  logger.exception("store error on %s %s", request.method, request.url.path, exc_info=exc)
  err = InternalError()
  return JSONResponse(status_code=err.status_code, content=err.body())


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_host_list())

app.include_router(auth_router)
app.include_router(boards_router)
app.include_router(tasks_router)
app.include_router(activity_router)
app.include_router(realtime_router)


@app.middleware("http")
async def _request_metrics_middleware(request, call_next):
  start = monotonic()
  response = await call_next(request)
  elapsed_ms = (monotonic() - start) * 1000.0
  runtime_metrics.observe_request(response.status_code, elapsed_ms)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  response.headers.setdefault("X-Frame-Options", "DENY")
  response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
  return response


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


@app.get("/metrics/runtime")
async def metrics_runtime() -> dict:
  out = runtime_metrics.snapshot()
  out["hub"] = app.state.hub.stats()
  return out


def _is_test_db() -> bool:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  return "test" in db_name


async def _reset_online_flags() -> None:
  # No connection survives a restart.
  async with SessionLocal() as db:
    await db.execute(update(User).where(User.is_online.is_(True)).values(is_online=False))
    await db.commit()


@app.on_event("startup")
async def _startup() -> None:
  if _is_test_db():
    return
  await _reset_online_flags()
  logger.info("boardsync %s (%s) started", settings.app_version, settings.build_sha)


@app.on_event("shutdown")
async def _shutdown() -> None:
  await app.state.hub.close()
  await engine.dispose()
