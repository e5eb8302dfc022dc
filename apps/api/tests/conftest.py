from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / 'boardsync_test.db'}")

from boardsync.config import settings
from boardsync.db import engine
from boardsync.main import app
from boardsync.models import Base
from boardsync.rate_limit import limiter
from boardsync.realtime.hub import BroadcastHub
from boardsync.session_gate import Identity


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  limiter.reset_prefix("auth:")
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
    await conn.run_sync(Base.metadata.create_all)
  await engine.dispose()


@pytest.fixture(autouse=True)
async def _clean_between_tests() -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. boardsync_test)."
    )
  await _reset_db()
  app.state.hub = BroadcastHub()
  yield
  await app.state.hub.close()
  await engine.dispose()


@pytest.fixture
async def client() -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


def auth(token: str) -> dict[str, str]:
  return {"Authorization": f"Bearer {token}"}


async def register(client: AsyncClient, name: str, email: str, password: str = "secret123") -> dict:
  res = await client.post("/auth/register", json={"name": name, "email": email, "password": password})
  assert res.status_code == 201, res.text
  cookie = res.headers.get("set-cookie")
  assert cookie and "bs_session=" in cookie
  return res.json()


async def login(client: AsyncClient, email: str, password: str = "secret123") -> dict:
  res = await client.post("/auth/login", json={"email": email, "password": password})
  assert res.status_code == 200, res.text
  return res.json()


async def add_member(client: AsyncClient, owner_token: str, board_id: str, email: str) -> dict:
  res = await client.post(f"/boards/{board_id}/members", json={"email": email}, headers=auth(owner_token))
  assert res.status_code == 201, res.text
  return res.json()


async def create_task(client: AsyncClient, token: str, board_id: str, title: str, **fields) -> dict:
  res = await client.post(f"/boards/{board_id}/tasks", json={"title": title, **fields}, headers=auth(token))
  assert res.status_code == 201, res.text
  return res.json()


async def me(client: AsyncClient, token: str) -> dict:
  res = await client.get("/auth/me", headers=auth(token))
  assert res.status_code == 200, res.text
  return res.json()


def identity(user_id: str, name: str, *, email: str | None = None, ttl_seconds: float = 3600) -> Identity:
  return Identity(
    user_id=user_id,
    name=name,
    email=email or f"{name.lower()}@example.com",
    expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds),
  )


class FakeSocket:
  """Stands in for a websocket: records frames, can be told to fail or stall."""

  def __init__(self, *, fail: bool = False, gate=None) -> None:
    self.sent: list[dict] = []
    self.closed = False
    self.fail = fail
    self.gate = gate

  async def send(self, message: dict) -> None:
    if self.gate is not None:
      await self.gate.wait()
    if self.fail:
      raise ConnectionError("peer went away")
    self.sent.append(message)

  async def close(self) -> None:
    self.closed = True

  def types(self) -> list[str]:
    return [m["type"] for m in self.sent]

  def of_type(self, event_type: str) -> list[dict]:
    return [m["data"] for m in self.sent if m["type"] == event_type]
