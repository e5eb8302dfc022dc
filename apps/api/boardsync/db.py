from __future__ import annotations

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from boardsync.config import settings


def _engine_kwargs(url: str) -> dict:
  if url.startswith("sqlite"):
    # Concurrent writers wait on the file lock instead of failing fast.
    return {"connect_args": {"timeout": 30}}
  return {"pool_pre_ping": True}


engine = create_async_engine(settings.database_url, echo=settings.database_echo, **_engine_kwargs(settings.database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
