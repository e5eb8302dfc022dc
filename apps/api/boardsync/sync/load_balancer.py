"""Least-loaded assignment and the per-user active task counters.

``users.active_tasks_count`` is the number of tasks assigned to the user whose
status is not Done. Mutations keep it current with atomic increments and
decrements issued in the same transaction as the task write; the full recount
is the repair path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.config import settings
from boardsync.errors import AssignmentContendedError, AssignmentUnavailableError, NotFoundError
from boardsync.models import STATUS_DONE, BoardMember, Task, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
  user_id: str
  active_tasks_count: int


def is_active(status: str | None) -> bool:
  return status is not None and status != STATUS_DONE


def select_least_loaded_user(candidates: Iterable[Candidate]) -> str | None:
  # Ties go to the smallest user id so identical load always picks the same user.
  best: Candidate | None = None
  for c in candidates:
    if best is None or (c.active_tasks_count, c.user_id) < (best.active_tasks_count, best.user_id):
      best = c
  return best.user_id if best else None


async def eligible_candidates(db: AsyncSession, board_id: str) -> list[Candidate]:
  res = await db.execute(
    select(User.id, User.active_tasks_count)
    .join(BoardMember, BoardMember.user_id == User.id)
    .where(BoardMember.board_id == board_id, User.active.is_(True))
    .order_by(User.active_tasks_count.asc(), User.id.asc())
  )
  return [Candidate(user_id=row.id, active_tasks_count=int(row.active_tasks_count or 0)) for row in res.all()]


async def reserve_least_loaded_user(db: AsyncSession, board_id: str) -> str:
  """Pick the least-loaded eligible member and claim one slot on their counter.

  The claim is a conditional increment against the count that was read, so two
  concurrent assignments can never both take the same "fewest tasks" reading.
  The loser re-reads and selects again.
  """
  attempts = max(1, int(settings.assignment_max_attempts))
  for attempt in range(attempts):
    candidates = await eligible_candidates(db, board_id)
    chosen = select_least_loaded_user(candidates)
    if chosen is None:
      raise AssignmentUnavailableError()
    observed = next(c.active_tasks_count for c in candidates if c.user_id == chosen)
    res = await db.execute(
      update(User)
      .where(User.id == chosen, User.active_tasks_count == observed)
      .values(active_tasks_count=User.active_tasks_count + 1)
      .execution_options(synchronize_session=False)
    )
    if res.rowcount == 1:
      return chosen
    logger.debug("assignment claim on %s lost a race (attempt %d)", chosen, attempt + 1)
  logger.warning("could not claim an assignee on board %s after %d attempts", board_id, attempts)
  raise AssignmentContendedError()


async def adjust_active_count(db: AsyncSession, user_id: str, delta: int) -> None:
  if not delta:
    return
  new_value = User.active_tasks_count + delta
  await db.execute(
    update(User)
    .where(User.id == user_id)
    .values(active_tasks_count=case((new_value < 0, 0), else_=new_value))
    .execution_options(synchronize_session=False)
  )


async def apply_assignment_delta(
  db: AsyncSession,
  *,
  old_assignee: str | None,
  old_active: bool,
  new_assignee: str | None,
  new_active: bool,
) -> set[str]:
  """Move one task's footprint from (old assignee, old status) to the new pair.

  Returns the ids of users whose count changed.
  """
  deltas: dict[str, int] = {}
  if old_assignee and old_active:
    deltas[old_assignee] = deltas.get(old_assignee, 0) - 1
  if new_assignee and new_active:
    deltas[new_assignee] = deltas.get(new_assignee, 0) + 1
  changed: set[str] = set()
  # Fixed lock order across transactions.
  for uid in sorted(deltas):
    if deltas[uid]:
      await adjust_active_count(db, uid, deltas[uid])
      changed.add(uid)
  return changed


async def recompute_active_count(db: AsyncSession, user_id: str) -> int:
  ures = await db.execute(select(User.id).where(User.id == user_id).with_for_update())
  if ures.scalar_one_or_none() is None:
    raise NotFoundError("User not found")
  cres = await db.execute(
    select(func.count()).select_from(Task).where(Task.assigned_to == user_id, Task.status != STATUS_DONE)
  )
  count = int(cres.scalar_one())
  await db.execute(
    update(User).where(User.id == user_id).values(active_tasks_count=count).execution_options(synchronize_session=False)
  )
  return count


async def recompute_board_counts(db: AsyncSession, board_id: str) -> dict[str, int]:
  res = await db.execute(select(BoardMember.user_id).where(BoardMember.board_id == board_id).order_by(BoardMember.user_id.asc()))
  return {uid: await recompute_active_count(db, uid) for uid in res.scalars().all()}
