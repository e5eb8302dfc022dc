from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.deps import get_current_user, get_db, get_hub, require_board_member
from boardsync.models import User
from boardsync.realtime.hub import BroadcastHub
from boardsync.schemas import TaskCreateIn, TaskMoveIn, TaskOut, TaskUpdateIn
from boardsync.sync import tasks as task_service
from boardsync.sync.snapshots import user_brief
from boardsync.sync.version_guard import load_task

router = APIRouter(tags=["tasks"])


async def _task_board(db: AsyncSession, task_id: str, user: User) -> str:
  t = await load_task(db, task_id)
  await require_board_member(t.board_id, user.id, db)
  return t.board_id


@router.get("/boards/{board_id}/tasks", response_model=list[TaskOut])
async def list_tasks(board_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[TaskOut]:
  await require_board_member(board_id, user.id, db)
  return await task_service.list_tasks(db, board_id)


@router.post("/boards/{board_id}/tasks", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_task(
  board_id: str,
  payload: TaskCreateIn,
  user: User = Depends(get_current_user),
  hub: BroadcastHub = Depends(get_hub),
  db: AsyncSession = Depends(get_db),
) -> TaskOut:
  await require_board_member(board_id, user.id, db)
  return await task_service.create_task(
    db,
    hub,
    actor=user_brief(user),
    board_id=board_id,
    title=payload.title,
    description=payload.description,
    priority=payload.priority,
    assigned_to=payload.assignedTo,
  )


@router.get("/tasks/{task_id}", response_model=TaskOut)
async def get_task(task_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> TaskOut:
  await _task_board(db, task_id, user)
  return await task_service.get_task(db, task_id)


@router.patch("/tasks/{task_id}", response_model=TaskOut)
async def update_task(
  task_id: str,
  payload: TaskUpdateIn,
  user: User = Depends(get_current_user),
  hub: BroadcastHub = Depends(get_hub),
  db: AsyncSession = Depends(get_db),
) -> TaskOut:
  await _task_board(db, task_id, user)
  changes = payload.model_dump(exclude_unset=True)
  changes.pop("version", None)
  return await task_service.update_task(db, hub, actor=user_brief(user), task_id=task_id, version=payload.version, changes=changes)


@router.post("/tasks/{task_id}/move", response_model=TaskOut)
async def move_task(
  task_id: str,
  payload: TaskMoveIn,
  user: User = Depends(get_current_user),
  hub: BroadcastHub = Depends(get_hub),
  db: AsyncSession = Depends(get_db),
) -> TaskOut:
  await _task_board(db, task_id, user)
  return await task_service.move_task(
    db,
    hub,
    actor=user_brief(user),
    task_id=task_id,
    version=payload.version,
    status=payload.status,
    position=payload.position,
  )


@router.delete("/tasks/{task_id}")
async def delete_task(
  task_id: str,
  version: int | None = Query(default=None, ge=1),
  user: User = Depends(get_current_user),
  hub: BroadcastHub = Depends(get_hub),
  db: AsyncSession = Depends(get_db),
) -> dict:
  await _task_board(db, task_id, user)
  await task_service.delete_task(db, hub, actor=user_brief(user), task_id=task_id, version=version)
  return {"ok": True}


@router.post("/tasks/{task_id}/smart-assign", response_model=TaskOut)
async def smart_assign(
  task_id: str,
  user: User = Depends(get_current_user),
  hub: BroadcastHub = Depends(get_hub),
  db: AsyncSession = Depends(get_db),
) -> TaskOut:
  await _task_board(db, task_id, user)
  return await task_service.smart_assign_task(db, hub, actor=user_brief(user), task_id=task_id)
