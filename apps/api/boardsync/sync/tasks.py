"""Task mutations: guard, persist, rebalance counters, log, then broadcast.

Every mutation runs in the caller's session. Nothing is logged or broadcast
unless the store write succeeded, and the broadcast for a board is issued while
holding that board's commit-order lock, right after the commit.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync import activity
from boardsync.errors import AssignmentUnavailableError, ValidationError
from boardsync.models import STATUS_TODO, BoardMember, Task, User
from boardsync.realtime.hub import BroadcastHub
from boardsync.schemas import ActionLogOut, TaskOut, UserBrief
from boardsync.sync import load_balancer, version_guard
from boardsync.sync.snapshots import load_briefs, task_out, task_snapshot

logger = logging.getLogger(__name__)

RESERVED_TITLES = {"todo", "in progress", "inprogress", "done"}

# Request field -> column.
_UPDATABLE = {
  "title": "title",
  "description": "description",
  "status": "status",
  "priority": "priority",
  "assignedTo": "assigned_to",
  "position": "position",
}


def check_title(title: str | None) -> str:
  value = (title or "").strip()
  if not value:
    raise ValidationError("Title is required")
  if len(value) > 100:
    raise ValidationError("Title cannot exceed 100 characters")
  if value.casefold() in RESERVED_TITLES:
    raise ValidationError("Title cannot be the same as column names (Todo, In Progress, Done)")
  return value


async def _ensure_title_free(db: AsyncSession, board_id: str, title: str, *, exclude_task_id: str | None = None) -> None:
  q = select(Task.id).where(Task.board_id == board_id, Task.title == title)
  if exclude_task_id:
    q = q.where(Task.id != exclude_task_id)
  if (await db.execute(q)).first():
    raise ValidationError("Task title already exists on this board")


async def _validate_assignee(db: AsyncSession, board_id: str, user_id: str | None) -> None:
  if not user_id:
    raise ValidationError("Task must be assigned to a user")
  res = await db.execute(
    select(User.id)
    .join(BoardMember, BoardMember.user_id == User.id)
    .where(User.id == user_id, BoardMember.board_id == board_id, User.active.is_(True))
  )
  if not res.scalar_one_or_none():
    raise ValidationError("Invalid assignedTo (must be an active board member)")


async def _next_position(db: AsyncSession, board_id: str, status: str) -> int:
  res = await db.execute(select(func.max(Task.position)).where(Task.board_id == board_id, Task.status == status))
  current = res.scalar_one()
  return (current + 1) if current is not None else 0


async def _publish(
  db: AsyncSession,
  hub: BroadcastHub,
  *,
  board_id: str,
  event_type: str,
  payload: dict[str, Any],
  actor: UserBrief,
  action: str,
  message: str,
  task_id: str | None,
  task_title: str | None,
  metadata: dict[str, Any],
) -> ActionLogOut:
  async with hub.commit_order(board_id):
    log = await activity.append(
      db,
      actor=actor,
      action=action,
      message=message,
      board_id=board_id,
      task_id=task_id,
      task_title=task_title,
      metadata=metadata,
    )
    await db.commit()
    hub.broadcast(board_id, event_type, {**payload, "actionLog": log.model_dump(mode="json")})
  return log


async def list_tasks(db: AsyncSession, board_id: str) -> list[TaskOut]:
  res = await db.execute(
    select(Task).where(Task.board_id == board_id).order_by(Task.position.asc(), Task.created_at.asc())
  )
  tasks = list(res.scalars().all())
  briefs = await load_briefs(db, {t.assigned_to for t in tasks})
  return [task_out(t, briefs.get(t.assigned_to)) for t in tasks]


async def get_task(db: AsyncSession, task_id: str) -> TaskOut:
  return await task_snapshot(db, await version_guard.load_task(db, task_id))


async def create_task(
  db: AsyncSession,
  hub: BroadcastHub,
  *,
  actor: UserBrief,
  board_id: str,
  title: str,
  description: str = "",
  priority: str = "Medium",
  assigned_to: str | None = None,
) -> TaskOut:
  title = check_title(title)
  await _ensure_title_free(db, board_id, title)

  smart = not assigned_to
  if smart:
    assigned_to = await load_balancer.reserve_least_loaded_user(db, board_id)
  else:
    await _validate_assignee(db, board_id, assigned_to)
    await load_balancer.adjust_active_count(db, assigned_to, 1)

  t = Task(
    board_id=board_id,
    title=title,
    description=description or "",
    status=STATUS_TODO,
    priority=priority or "Medium",
    assigned_to=assigned_to,
    last_edited_by=actor.id,
    position=await _next_position(db, board_id, STATUS_TODO),
    version=1,
  )
  db.add(t)
  try:
    await db.flush()
  except IntegrityError as exc:
    raise ValidationError("Task title already exists on this board") from exc

  out = await task_snapshot(db, t)
  assignee_name = out.assignee.name if out.assignee else assigned_to
  await _publish(
    db,
    hub,
    board_id=board_id,
    event_type="task_created",
    payload={"task": out.model_dump(mode="json")},
    actor=actor,
    action="task_created",
    message=f'{actor.name} created task "{title}"',
    task_id=t.id,
    task_title=t.title,
    metadata={"priority": t.priority, "assignedTo": assignee_name, "smartAssigned": smart},
  )
  logger.info("task %s created on board %s (assignee=%s smart=%s)", t.id, board_id, assigned_to, smart)
  return out


async def update_task(
  db: AsyncSession,
  hub: BroadcastHub,
  *,
  actor: UserBrief,
  task_id: str,
  version: int,
  changes: dict[str, Any],
) -> TaskOut:
  """Apply a partial update against the version the client last observed.

  ``changes`` uses request field names (``title``, ``status``, ``assignedTo``...).
  A stale ``version`` raises ConflictError with the server snapshot.
  """
  current = await version_guard.load_task(db, task_id, fresh=True)
  check = await version_guard.check_conflict(db, task_id, version)
  check.raise_for_conflict()

  unknown = set(changes) - set(_UPDATABLE)
  if unknown:
    raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")

  values: dict[str, Any] = {}
  for field_name, column in _UPDATABLE.items():
    if field_name in changes:
      values[column] = changes[field_name]
  if "title" in values:
    values["title"] = check_title(values["title"])
    await _ensure_title_free(db, current.board_id, values["title"], exclude_task_id=task_id)
  if "description" in values:
    values["description"] = values["description"] or ""
  if "assigned_to" in values:
    await _validate_assignee(db, current.board_id, values["assigned_to"])
  for column in ("status", "priority", "position"):
    if column in values and values[column] is None:
      del values[column]
  if "status" in values and values["status"] != current.status and "position" not in values:
    values["position"] = await _next_position(db, current.board_id, values["status"])
  values["last_edited_by"] = actor.id

  old_status = current.status
  old_assignee = current.assigned_to
  updated = await version_guard.apply(db, task_id, version, values)
  await load_balancer.apply_assignment_delta(
    db,
    old_assignee=old_assignee,
    old_active=load_balancer.is_active(old_status),
    new_assignee=updated.assigned_to,
    new_active=load_balancer.is_active(updated.status),
  )

  out = await task_snapshot(db, updated)
  moved = updated.status != old_status
  metadata: dict[str, Any] = {"oldStatus": old_status, "newStatus": updated.status, "changes": sorted(changes), "version": updated.version}
  if updated.assigned_to != old_assignee:
    briefs = await load_briefs(db, {old_assignee, updated.assigned_to})
    metadata["oldAssignee"] = briefs[old_assignee].name if old_assignee in briefs else old_assignee
    metadata["newAssignee"] = briefs[updated.assigned_to].name if updated.assigned_to in briefs else updated.assigned_to
  if moved:
    action, message = "task_moved", f'{actor.name} moved "{updated.title}" to {updated.status}'
  else:
    action, message = "task_updated", f'{actor.name} updated task "{updated.title}"'

  await _publish(
    db,
    hub,
    board_id=updated.board_id,
    event_type="task_updated",
    payload={"task": out.model_dump(mode="json")},
    actor=actor,
    action=action,
    message=message,
    task_id=updated.id,
    task_title=updated.title,
    metadata=metadata,
  )
  return out


async def move_task(
  db: AsyncSession,
  hub: BroadcastHub,
  *,
  actor: UserBrief,
  task_id: str,
  version: int,
  status: str,
  position: int | None = None,
) -> TaskOut:
  changes: dict[str, Any] = {"status": status}
  if position is not None:
    changes["position"] = position
  return await update_task(db, hub, actor=actor, task_id=task_id, version=version, changes=changes)


async def delete_task(
  db: AsyncSession,
  hub: BroadcastHub,
  *,
  actor: UserBrief,
  task_id: str,
  version: int | None = None,
) -> None:
  t = await version_guard.load_task(db, task_id, fresh=True)
  if version is not None:
    (await version_guard.check_conflict(db, task_id, version)).raise_for_conflict()
  snapshot = await task_snapshot(db, t)
  board_id, title, assignee, status = t.board_id, t.title, t.assigned_to, t.status

  await version_guard.delete(db, task_id, t.version if version is None else version)
  await load_balancer.apply_assignment_delta(
    db,
    old_assignee=assignee,
    old_active=load_balancer.is_active(status),
    new_assignee=None,
    new_active=False,
  )
  await _publish(
    db,
    hub,
    board_id=board_id,
    event_type="task_deleted",
    payload={"taskId": task_id, "task": snapshot.model_dump(mode="json")},
    actor=actor,
    action="task_deleted",
    message=f'{actor.name} deleted task "{title}"',
    task_id=task_id,
    task_title=None,
    metadata={"deletedTask": title},
  )


async def smart_assign_task(db: AsyncSession, hub: BroadcastHub, *, actor: UserBrief, task_id: str) -> TaskOut:
  t = await version_guard.load_task(db, task_id, fresh=True)
  old_assignee = t.assigned_to
  active = load_balancer.is_active(t.status)

  # Take the task row first; a concurrent edit turns into a conflict here.
  touched = await version_guard.apply(db, task_id, t.version, {"last_edited_by": actor.id})
  if active:
    # Release this task's slot so the current assignee competes on equal terms.
    await load_balancer.adjust_active_count(db, old_assignee, -1)
    chosen = await load_balancer.reserve_least_loaded_user(db, touched.board_id)
  else:
    chosen = load_balancer.select_least_loaded_user(await load_balancer.eligible_candidates(db, touched.board_id))
    if chosen is None:
      raise AssignmentUnavailableError()

  await db.execute(
    update(Task).where(Task.id == task_id).values(assigned_to=chosen).execution_options(synchronize_session=False)
  )
  updated = await version_guard.load_task(db, task_id, fresh=True)
  out = await task_snapshot(db, updated)
  briefs = await load_briefs(db, {old_assignee, chosen})
  new_name = briefs[chosen].name if chosen in briefs else chosen
  old_name = briefs[old_assignee].name if old_assignee in briefs else old_assignee

  await _publish(
    db,
    hub,
    board_id=updated.board_id,
    event_type="task_updated",
    payload={"task": out.model_dump(mode="json")},
    actor=actor,
    action="task_assigned",
    message=f'{actor.name} smart-assigned "{updated.title}" to {new_name}',
    task_id=updated.id,
    task_title=updated.title,
    metadata={"oldAssignee": old_name, "newAssignee": new_name, "version": updated.version},
  )
  logger.info("task %s smart-assigned %s -> %s", task_id, old_assignee, chosen)
  return out
