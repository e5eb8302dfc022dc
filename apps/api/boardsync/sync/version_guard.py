"""Optimistic concurrency for task mutations.

Every successful write bumps ``tasks.version`` by exactly one, and every write
is a compare-and-swap against the version the caller observed. A mismatch is
always a conflict, however little time has passed, and the caller receives the
current server snapshot to merge against.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete as sa_delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.errors import ConflictError, NotFoundError, ValidationError
from boardsync.models import Task, utcnow
from boardsync.schemas import TaskOut
from boardsync.sync.snapshots import task_snapshot


@dataclass(frozen=True)
class ConflictCheck:
  ok: bool
  server: TaskOut
  client_version: int | None

  @property
  def conflict(self) -> bool:
    return not self.ok

  def raise_for_conflict(self) -> None:
    if self.ok:
      return
    raise ConflictError(
      snapshot=self.server.model_dump(mode="json"),
      client_version=self.client_version,
      server_version=self.server.version,
    )


async def load_task(db: AsyncSession, task_id: str, *, fresh: bool = False) -> Task:
  q = select(Task).where(Task.id == task_id)
  if fresh:
    q = q.execution_options(populate_existing=True)
  res = await db.execute(q)
  t = res.scalar_one_or_none()
  if not t:
    raise NotFoundError("Task not found")
  return t


async def check_conflict(db: AsyncSession, task_id: str, known_version: int | None) -> ConflictCheck:
  t = await load_task(db, task_id, fresh=True)
  snapshot = await task_snapshot(db, t)
  return ConflictCheck(ok=(known_version is not None and t.version == known_version), server=snapshot, client_version=known_version)


async def _conflict_from_store(db: AsyncSession, task_id: str, expected_version: int) -> ConflictError:
  res = await db.execute(select(Task).where(Task.id == task_id).execution_options(populate_existing=True))
  current = res.scalar_one_or_none()
  if current is None:
    raise NotFoundError("Task not found")
  snapshot = await task_snapshot(db, current)
  return ConflictError(
    snapshot=snapshot.model_dump(mode="json"),
    client_version=expected_version,
    server_version=current.version,
  )


async def apply(db: AsyncSession, task_id: str, expected_version: int, values: dict[str, Any]) -> Task:
  """Write ``values`` iff the stored version still equals ``expected_version``."""
  stmt = (
    update(Task)
    .where(Task.id == task_id, Task.version == expected_version)
    .values(**values, version=Task.version + 1, updated_at=utcnow())
    .execution_options(synchronize_session=False)
  )
  try:
    res = await db.execute(stmt)
  except IntegrityError as exc:
    raise ValidationError("Task title already exists on this board") from exc
  if res.rowcount != 1:
    raise await _conflict_from_store(db, task_id, expected_version)
  return await load_task(db, task_id, fresh=True)


async def delete(db: AsyncSession, task_id: str, expected_version: int) -> None:
  stmt = (
    sa_delete(Task)
    .where(Task.id == task_id, Task.version == expected_version)
    .execution_options(synchronize_session=False)
  )
  res = await db.execute(stmt)
  if res.rowcount != 1:
    raise await _conflict_from_store(db, task_id, expected_version)
