from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.config import settings
from boardsync.errors import ValidationError
from boardsync.models import ACTION_TYPES, ActionLog, BoardMember, Task, User, as_utc, utcnow
from boardsync.schemas import ActionLogOut, TaskRef, UserBrief

MAX_MESSAGE_LENGTH = 200


async def _next_stamp(db: AsyncSession, board_id: str) -> datetime:
  # createdAt stays strictly increasing per board even when two appends share
  # a clock tick; callers hold the board's commit order.
  now = utcnow()
  res = await db.execute(select(func.max(ActionLog.created_at)).where(ActionLog.board_id == board_id))
  last = as_utc(res.scalar_one_or_none())
  if last is not None and now <= last:
    now = last + timedelta(microseconds=1)
  return now


def clamp_page(page: int | None, page_size: int | None) -> tuple[int, int]:
  p = max(1, int(page or 1))
  size = int(page_size or settings.activity_page_size_default)
  size = max(1, min(size, int(settings.activity_page_size_max)))
  return p, size


def entry_out(log: ActionLog, *, actor: UserBrief | None, task: TaskRef | None = None) -> ActionLogOut:
  return ActionLogOut(
    id=log.id,
    user=actor,
    action=log.action,
    message=log.message,
    taskId=log.task_id,
    task=task,
    boardId=log.board_id,
    metadata=dict(log.meta or {}),
    createdAt=as_utc(log.created_at),
  )


async def append(
  db: AsyncSession,
  *,
  actor: UserBrief,
  action: str,
  message: str,
  board_id: str,
  task_id: str | None = None,
  task_title: str | None = None,
  metadata: dict[str, Any] | None = None,
) -> ActionLogOut:
  """Write one immutable activity entry and return it ready for broadcast.

  The row is flushed, not committed: the caller commits the surrounding
  mutation and only then broadcasts, so a client that re-reads the log sees an
  entry for every event it received live.
  """
  if action not in ACTION_TYPES:
    raise ValidationError(f"Unknown action: {action}")
  if not board_id:
    raise ValidationError("boardId is required")
  log = ActionLog(
    user_id=actor.id,
    action=action,
    message=(message or "")[:MAX_MESSAGE_LENGTH],
    task_id=task_id,
    board_id=board_id,
    meta=jsonable_encoder(metadata or {}),
    created_at=await _next_stamp(db, board_id),
  )
  db.add(log)
  await db.flush()
  task = TaskRef(id=task_id, title=task_title) if task_id and task_title is not None else None
  return entry_out(log, actor=actor, task=task)


async def _enrich(db: AsyncSession, logs: list[ActionLog]) -> list[ActionLogOut]:
  user_ids = {log.user_id for log in logs}
  task_ids = {log.task_id for log in logs if log.task_id}
  users: dict[str, UserBrief] = {}
  tasks: dict[str, TaskRef] = {}
  if user_ids:
    ures = await db.execute(select(User.id, User.name, User.email).where(User.id.in_(user_ids)))
    users = {row.id: UserBrief(id=row.id, name=row.name, email=row.email) for row in ures.all()}
  if task_ids:
    tres = await db.execute(select(Task.id, Task.title).where(Task.id.in_(task_ids)))
    tasks = {row.id: TaskRef(id=row.id, title=row.title) for row in tres.all()}
  return [entry_out(log, actor=users.get(log.user_id), task=tasks.get(log.task_id or "")) for log in logs]


async def query(
  db: AsyncSession,
  *,
  board_id: str | None = None,
  user_id: str | None = None,
  viewer_id: str | None = None,
  page: int | None = 1,
  page_size: int | None = None,
) -> tuple[list[ActionLogOut], int]:
  if not board_id and not user_id:
    raise ValidationError("boardId or userId is required")
  page, page_size = clamp_page(page, page_size)

  conds = []
  if board_id:
    conds.append(ActionLog.board_id == board_id)
  if user_id:
    conds.append(ActionLog.user_id == user_id)
  if viewer_id:
    conds.append(ActionLog.board_id.in_(select(BoardMember.board_id).where(BoardMember.user_id == viewer_id)))

  total = (await db.execute(select(func.count()).select_from(ActionLog).where(*conds))).scalar_one()
  res = await db.execute(
    select(ActionLog)
    .where(*conds)
    .order_by(ActionLog.created_at.desc(), ActionLog.id.desc())
    .offset((page - 1) * page_size)
    .limit(page_size)
  )
  return await _enrich(db, list(res.scalars().all())), int(total)


async def recent(db: AsyncSession, board_id: str, limit: int | None = None) -> list[ActionLogOut]:
  _, limit = clamp_page(1, limit)
  res = await db.execute(
    select(ActionLog)
    .where(ActionLog.board_id == board_id)
    .order_by(ActionLog.created_at.desc(), ActionLog.id.desc())
    .limit(limit)
  )
  return await _enrich(db, list(res.scalars().all()))
