from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.models import Board, Task, User, as_utc
from boardsync.schemas import BoardOut, TaskOut, UserBrief, UserOut


def user_brief(u: User) -> UserBrief:
  return UserBrief(id=u.id, name=u.name, email=u.email)


async def load_briefs(db: AsyncSession, user_ids: set[str]) -> dict[str, UserBrief]:
  ids = {uid for uid in user_ids if uid}
  if not ids:
    return {}
  res = await db.execute(select(User).where(User.id.in_(ids)))
  return {u.id: user_brief(u) for u in res.scalars().all()}


def task_out(t: Task, assignee: UserBrief | None = None) -> TaskOut:
  return TaskOut(
    id=t.id,
    boardId=t.board_id,
    title=t.title,
    description=t.description or "",
    status=t.status,
    priority=t.priority,
    assignedTo=t.assigned_to,
    assignee=assignee,
    lastEditedBy=t.last_edited_by,
    position=t.position,
    version=t.version,
    createdAt=as_utc(t.created_at),
    updatedAt=as_utc(t.updated_at),
  )


async def task_snapshot(db: AsyncSession, t: Task) -> TaskOut:
  briefs = await load_briefs(db, {t.assigned_to})
  return task_out(t, briefs.get(t.assigned_to))


def user_out(u: User) -> UserOut:
  return UserOut(
    id=u.id,
    name=u.name,
    email=u.email,
    activeTasksCount=int(u.active_tasks_count or 0),
    isOnline=bool(u.is_online),
    lastSeen=as_utc(u.last_seen),
    createdAt=as_utc(u.created_at),
  )


def board_out(b: Board) -> BoardOut:
  return BoardOut(
    id=b.id,
    name=b.name,
    description=b.description or "",
    ownerId=b.owner_id,
    createdAt=as_utc(b.created_at),
    updatedAt=as_utc(b.updated_at),
  )
