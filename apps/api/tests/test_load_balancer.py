from __future__ import annotations

import asyncio

import pytest
from httpx import AsyncClient
from sqlalchemy import select, update

from boardsync.db import SessionLocal
from boardsync.errors import AssignmentContendedError, AssignmentUnavailableError
from boardsync.main import app
from boardsync.models import User
from boardsync.schemas import UserBrief
from boardsync.sync import load_balancer, tasks as task_service
from boardsync.sync.load_balancer import Candidate, select_least_loaded_user
from conftest import add_member, auth, create_task, me, register


async def _counts(*user_ids: str) -> dict[str, int]:
  async with SessionLocal() as db:
    res = await db.execute(select(User.id, User.active_tasks_count).where(User.id.in_(user_ids)))
    return {row.id: row.active_tasks_count for row in res.all()}


async def _board_of_three(client: AsyncClient) -> tuple[dict, dict, dict, str]:
  a = await register(client, "Alice", "alice@example.com")
  b = await register(client, "Bob", "bob@example.com")
  c = await register(client, "Cara", "cara@example.com")
  board_id = a["board"]["id"]
  await add_member(client, a["token"], board_id, "bob@example.com")
  await add_member(client, a["token"], board_id, "cara@example.com")
  return a, b, c, board_id


@pytest.mark.anyio
async def test_select_least_loaded_breaks_ties_by_user_id() -> None:
  assert select_least_loaded_user([]) is None
  picked = select_least_loaded_user([Candidate("u3", 1), Candidate("u2", 0), Candidate("u1", 0)])
  assert picked == "u1"
  assert select_least_loaded_user([Candidate("a", 5), Candidate("b", 2), Candidate("c", 3)]) == "b"


@pytest.mark.anyio
async def test_create_without_assignee_picks_least_loaded_member(client: AsyncClient) -> None:
  a = await register(client, "Alice", "alice@example.com")
  b = await register(client, "Bob", "bob@example.com")
  board_id = a["board"]["id"]
  await add_member(client, a["token"], board_id, "bob@example.com")

  # Bob already carries two active tasks.
  await create_task(client, a["token"], board_id, "Bob one", assignedTo=b["user"]["id"])
  await create_task(client, a["token"], board_id, "Bob two", assignedTo=b["user"]["id"])
  assert (await me(client, a["token"]))["activeTasksCount"] == 0

  t = await create_task(client, a["token"], board_id, "Fix bug")
  assert t["assignedTo"] == a["user"]["id"]
  assert t["assignee"]["name"] == "Alice"
  assert (await me(client, a["token"]))["activeTasksCount"] == 1
  assert (await me(client, b["token"]))["activeTasksCount"] == 2


@pytest.mark.anyio
async def test_done_transitions_adjust_only_the_assignee(client: AsyncClient) -> None:
  a, b, c, board_id = await _board_of_three(client)
  t = await create_task(client, a["token"], board_id, "Close sprint", assignedTo=a["user"]["id"])
  await create_task(client, a["token"], board_id, "Other", assignedTo=b["user"]["id"])
  before = await _counts(a["user"]["id"], b["user"]["id"], c["user"]["id"])
  assert before == {a["user"]["id"]: 1, b["user"]["id"]: 1, c["user"]["id"]: 0}

  r = await client.post(f"/tasks/{t['id']}/move", json={"version": 1, "status": "Done"}, headers=auth(a["token"]))
  assert r.status_code == 200, r.text
  after = await _counts(a["user"]["id"], b["user"]["id"], c["user"]["id"])
  assert after == {a["user"]["id"]: 0, b["user"]["id"]: 1, c["user"]["id"]: 0}

  # Reopening and reassigning moves the slot with the task.
  r = await client.patch(
    f"/tasks/{t['id']}",
    json={"version": 2, "status": "Todo", "assignedTo": c["user"]["id"]},
    headers=auth(a["token"]),
  )
  assert r.status_code == 200, r.text
  after = await _counts(a["user"]["id"], b["user"]["id"], c["user"]["id"])
  assert after == {a["user"]["id"]: 0, b["user"]["id"]: 1, c["user"]["id"]: 1}

  r = await client.delete(f"/tasks/{t['id']}", headers=auth(a["token"]))
  assert r.status_code == 200, r.text
  after = await _counts(a["user"]["id"], b["user"]["id"], c["user"]["id"])
  assert after == {a["user"]["id"]: 0, b["user"]["id"]: 1, c["user"]["id"]: 0}


@pytest.mark.anyio
async def test_smart_assign_moves_task_to_least_loaded(client: AsyncClient) -> None:
  a, b, c, board_id = await _board_of_three(client)
  t = await create_task(client, a["token"], board_id, "Heavy", assignedTo=a["user"]["id"])
  await create_task(client, a["token"], board_id, "A2", assignedTo=a["user"]["id"])
  await create_task(client, a["token"], board_id, "B1", assignedTo=b["user"]["id"])

  r = await client.post(f"/tasks/{t['id']}/smart-assign", headers=auth(b["token"]))
  assert r.status_code == 200, r.text
  body = r.json()
  assert body["assignedTo"] == c["user"]["id"]
  assert body["version"] == 2
  counts = await _counts(a["user"]["id"], b["user"]["id"], c["user"]["id"])
  assert counts == {a["user"]["id"]: 1, b["user"]["id"]: 1, c["user"]["id"]: 1}

  r = await client.get(f"/boards/{board_id}/activity/recent", params={"limit": 1}, headers=auth(a["token"]))
  entry = r.json()[0]
  assert entry["action"] == "task_assigned"
  assert entry["message"] == 'Bob smart-assigned "Heavy" to Cara'
  assert entry["metadata"]["oldAssignee"] == "Alice"


@pytest.mark.anyio
async def test_smart_assign_keeps_current_assignee_when_still_least_loaded(client: AsyncClient) -> None:
  a, b, c, board_id = await _board_of_three(client)
  await create_task(client, a["token"], board_id, "B1", assignedTo=b["user"]["id"])
  await create_task(client, a["token"], board_id, "A1", assignedTo=a["user"]["id"])
  t = await create_task(client, a["token"], board_id, "C1", assignedTo=c["user"]["id"])

  # Everyone has one task; Cara's own task must not count against her.
  r = await client.post(f"/tasks/{t['id']}/smart-assign", headers=auth(a["token"]))
  assert r.status_code == 200, r.text
  ids = [a["user"]["id"], b["user"]["id"], c["user"]["id"]]
  # Releasing Cara's slot leaves her at 0, strictly below the others.
  assert r.json()["assignedTo"] == c["user"]["id"]
  counts = await _counts(*ids)
  assert sorted(counts.values()) == [1, 1, 1]


@pytest.mark.anyio
async def test_no_eligible_members_is_reported(client: AsyncClient) -> None:
  a = await register(client, "Alice", "alice@example.com")
  async with SessionLocal() as db:
    await db.execute(update(User).where(User.id == a["user"]["id"]).values(active=False))
    await db.commit()
  async with SessionLocal() as db:
    with pytest.raises(AssignmentUnavailableError):
      await load_balancer.reserve_least_loaded_user(db, a["board"]["id"])


@pytest.mark.anyio
async def test_concurrent_smart_assignment_stays_balanced(client: AsyncClient) -> None:
  a, b, c, board_id = await _board_of_three(client)
  hub = app.state.hub
  actor = UserBrief(id=a["user"]["id"], name="Alice", email="alice@example.com")

  async def _create(i: int) -> str:
    async with SessionLocal() as db:
      out = await task_service.create_task(db, hub, actor=actor, board_id=board_id, title=f"Parallel {i}")
      return out.assignedTo

  assignees = await asyncio.gather(*[_create(i) for i in range(6)])
  counts = await _counts(a["user"]["id"], b["user"]["id"], c["user"]["id"])
  assert sorted(counts.values()) == [2, 2, 2]
  assert sorted(assignees.count(uid) for uid in counts) == [2, 2, 2]


@pytest.mark.anyio
async def test_recompute_repairs_drifted_counters(client: AsyncClient) -> None:
  a, b, c, board_id = await _board_of_three(client)
  await create_task(client, a["token"], board_id, "Real work", assignedTo=b["user"]["id"])
  async with SessionLocal() as db:
    await db.execute(update(User).where(User.id == b["user"]["id"]).values(active_tasks_count=7))
    await db.execute(update(User).where(User.id == c["user"]["id"]).values(active_tasks_count=3))
    await db.commit()

  r = await client.post(f"/boards/{board_id}/active-counts/recompute", headers=auth(a["token"]))
  assert r.status_code == 200, r.text
  assert r.json()["counts"] == {a["user"]["id"]: 0, b["user"]["id"]: 1, c["user"]["id"]: 0}
  assert await _counts(b["user"]["id"], c["user"]["id"]) == {b["user"]["id"]: 1, c["user"]["id"]: 0}


@pytest.mark.anyio
async def test_concurrent_assignment_from_uneven_load_levels_out(client: AsyncClient) -> None:
  a, b, c, board_id = await _board_of_three(client)
  for i in range(3):
    await create_task(client, a["token"], board_id, f"Alice {i}", assignedTo=a["user"]["id"])
  await create_task(client, a["token"], board_id, "Bob 0", assignedTo=b["user"]["id"])
  hub = app.state.hub
  actor = UserBrief(id=a["user"]["id"], name="Alice", email="alice@example.com")

  async def _create(i: int) -> str:
    async with SessionLocal() as db:
      out = await task_service.create_task(db, hub, actor=actor, board_id=board_id, title=f"Incoming {i}")
      return out.assignedTo

  assignees = await asyncio.gather(*[_create(i) for i in range(4)])
  counts = await _counts(a["user"]["id"], b["user"]["id"], c["user"]["id"])
  assert a["user"]["id"] not in assignees
  assert sorted(counts.values()) == [2, 3, 3]
  assert max(counts.values()) <= min(counts.values()) + 1


@pytest.mark.anyio
async def test_lost_claims_surface_as_retryable(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
  a = await register(client, "Alice", "alice@example.com")

  async def _stale(db, board_id):
    # A reading no row will ever match, so every claim loses.
    return [Candidate(a["user"]["id"], 999)]

  monkeypatch.setattr(load_balancer, "eligible_candidates", _stale)
  async with SessionLocal() as db:
    with pytest.raises(AssignmentContendedError):
      await load_balancer.reserve_least_loaded_user(db, a["board"]["id"])

  r = await client.post(f"/boards/{a['board']['id']}/tasks", json={"title": "Busy"}, headers=auth(a["token"]))
  assert r.status_code == 503, r.text
  assert r.headers["retry-after"] == "1"
  assert (await me(client, a["token"]))["activeTasksCount"] == 0
