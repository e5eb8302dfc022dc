from __future__ import annotations

import asyncio

import pytest
from httpx import AsyncClient

from boardsync.db import SessionLocal
from boardsync.errors import ConflictError, NotFoundError
from boardsync.main import app
from boardsync.schemas import UserBrief
from boardsync.sync import tasks as task_service, version_guard
from conftest import add_member, auth, create_task, register


@pytest.mark.anyio
async def test_version_increments_by_one_per_mutation(client: AsyncClient) -> None:
  a = await register(client, "Alice", "alice@example.com")
  board_id = a["board"]["id"]
  t = await create_task(client, a["token"], board_id, "Write docs")
  assert t["version"] == 1

  versions = [t["version"]]
  for body in (
    {"description": "first pass"},
    {"priority": "High"},
    {"status": "In Progress"},
  ):
    r = await client.patch(f"/tasks/{t['id']}", json={"version": versions[-1], **body}, headers=auth(a["token"]))
    assert r.status_code == 200, r.text
    versions.append(r.json()["version"])

  r = await client.post(f"/tasks/{t['id']}/move", json={"version": versions[-1], "status": "Done"}, headers=auth(a["token"]))
  assert r.status_code == 200, r.text
  versions.append(r.json()["version"])
  assert versions == [1, 2, 3, 4, 5]


@pytest.mark.anyio
async def test_stale_version_returns_conflict_with_server_snapshot(client: AsyncClient) -> None:
  a = await register(client, "Alice", "alice@example.com")
  b = await register(client, "Bob", "bob@example.com")
  board_id = a["board"]["id"]
  await add_member(client, a["token"], board_id, "bob@example.com")
  t = await create_task(client, a["token"], board_id, "Fix login")

  # Bring the task to version 3, which both clients have seen.
  v = t["version"]
  for desc in ("one", "two"):
    r = await client.patch(f"/tasks/{t['id']}", json={"version": v, "description": desc}, headers=auth(a["token"]))
    v = r.json()["version"]
  assert v == 3

  r = await client.patch(f"/tasks/{t['id']}", json={"version": 3, "priority": "High"}, headers=auth(b["token"]))
  assert r.status_code == 200, r.text
  assert r.json()["version"] == 4

  r = await client.patch(f"/tasks/{t['id']}", json={"version": 3, "description": "mine"}, headers=auth(a["token"]))
  assert r.status_code == 409, r.text
  body = r.json()
  assert body["conflict"] is True
  assert body["clientVersion"] == 3
  assert body["serverVersionNumber"] == 4
  assert body["serverVersion"]["version"] == 4
  assert body["serverVersion"]["priority"] == "High"
  assert body["serverVersion"]["description"] == "two"

  # Nothing was overwritten.
  r = await client.get(f"/tasks/{t['id']}", headers=auth(a["token"]))
  assert r.json()["description"] == "two"
  assert r.json()["version"] == 4


@pytest.mark.anyio
async def test_stale_move_and_delete_conflict(client: AsyncClient) -> None:
  a = await register(client, "Alice", "alice@example.com")
  board_id = a["board"]["id"]
  t = await create_task(client, a["token"], board_id, "Ship it")
  r = await client.patch(f"/tasks/{t['id']}", json={"version": 1, "priority": "Low"}, headers=auth(a["token"]))
  assert r.status_code == 200, r.text

  r = await client.post(f"/tasks/{t['id']}/move", json={"version": 1, "status": "Done"}, headers=auth(a["token"]))
  assert r.status_code == 409, r.text
  r = await client.delete(f"/tasks/{t['id']}", params={"version": 1}, headers=auth(a["token"]))
  assert r.status_code == 409, r.text

  r = await client.delete(f"/tasks/{t['id']}", params={"version": 2}, headers=auth(a["token"]))
  assert r.status_code == 200, r.text
  r = await client.get(f"/tasks/{t['id']}", headers=auth(a["token"]))
  assert r.status_code == 404, r.text


@pytest.mark.anyio
async def test_guard_primitives(client: AsyncClient) -> None:
  a = await register(client, "Alice", "alice@example.com")
  t = await create_task(client, a["token"], a["board"]["id"], "Guarded")

  async with SessionLocal() as db:
    check = await version_guard.check_conflict(db, t["id"], 1)
    assert check.ok and not check.conflict
    check.raise_for_conflict()

    updated = await version_guard.apply(db, t["id"], 1, {"description": "cas"})
    assert updated.version == 2
    await db.commit()

  async with SessionLocal() as db:
    stale = await version_guard.check_conflict(db, t["id"], 1)
    assert stale.conflict
    assert stale.server.version == 2
    with pytest.raises(ConflictError) as excinfo:
      stale.raise_for_conflict()
    assert excinfo.value.server_version == 2

    with pytest.raises(ConflictError):
      await version_guard.apply(db, t["id"], 1, {"description": "late"})
    with pytest.raises(ConflictError):
      await version_guard.delete(db, t["id"], 1)
    with pytest.raises(NotFoundError):
      await version_guard.apply(db, "missing-task", 1, {"description": "x"})
    with pytest.raises(NotFoundError):
      await version_guard.check_conflict(db, "missing-task", 1)


@pytest.mark.anyio
async def test_concurrent_updates_citing_same_version_admit_exactly_one(client: AsyncClient) -> None:
  a = await register(client, "Alice", "alice@example.com")
  b = await register(client, "Bob", "bob@example.com")
  board_id = a["board"]["id"]
  await add_member(client, a["token"], board_id, "bob@example.com")
  t = await create_task(client, a["token"], board_id, "Contested")
  hub = app.state.hub

  async def _edit(reg: dict, description: str):
    actor = UserBrief(id=reg["user"]["id"], name=reg["user"]["name"], email=reg["user"]["email"])
    async with SessionLocal() as db:
      try:
        return await task_service.update_task(
          db, hub, actor=actor, task_id=t["id"], version=1, changes={"description": description}
        )
      except ConflictError as exc:
        return exc

  results = await asyncio.gather(_edit(a, "from alice"), _edit(b, "from bob"))
  won = [r for r in results if not isinstance(r, ConflictError)]
  lost = [r for r in results if isinstance(r, ConflictError)]
  assert len(won) == 1 and len(lost) == 1
  assert won[0].version == 2
  assert lost[0].server_version == 2
  assert lost[0].snapshot["description"] == won[0].description

  r = await client.get(f"/tasks/{t['id']}", headers=auth(a["token"]))
  assert r.json()["version"] == 2
  assert r.json()["description"] == won[0].description
