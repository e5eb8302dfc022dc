from __future__ import annotations

import logging
import math

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync import activity
from boardsync.deps import get_current_user, get_db, require_board_member
from boardsync.errors import NotFoundError
from boardsync.models import User
from boardsync.schemas import ActionLogOut, ActivityPageOut, RecomputeOut
from boardsync.sync import load_balancer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["activity"])


def _page_out(entries: list[ActionLogOut], total: int, page: int | None, page_size: int | None) -> ActivityPageOut:
  page, page_size = activity.clamp_page(page, page_size)
  total_pages = math.ceil(total / page_size) if total else 0
  return ActivityPageOut(
    entries=entries,
    totalCount=total,
    page=page,
    pageSize=page_size,
    totalPages=total_pages,
    hasNextPage=page < total_pages,
    hasPrevPage=page > 1,
  )


@router.get("/boards/{board_id}/activity", response_model=ActivityPageOut)
async def board_activity(
  board_id: str,
  page: int = Query(default=1, ge=1),
  pageSize: int | None = Query(default=None, ge=1),
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> ActivityPageOut:
  await require_board_member(board_id, user.id, db)
  entries, total = await activity.query(db, board_id=board_id, page=page, page_size=pageSize)
  return _page_out(entries, total, page, pageSize)


@router.get("/boards/{board_id}/activity/recent", response_model=list[ActionLogOut])
async def recent_activity(
  board_id: str,
  limit: int | None = Query(default=None, ge=1),
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> list[ActionLogOut]:
  await require_board_member(board_id, user.id, db)
  return await activity.recent(db, board_id, limit)


@router.get("/users/{user_id}/activity", response_model=ActivityPageOut)
async def user_activity(
  user_id: str,
  page: int = Query(default=1, ge=1),
  pageSize: int | None = Query(default=None, ge=1),
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> ActivityPageOut:
  exists = await db.execute(select(User.id).where(User.id == user_id))
  if not exists.scalar_one_or_none():
    raise NotFoundError("User not found")
  entries, total = await activity.query(db, user_id=user_id, viewer_id=user.id, page=page, page_size=pageSize)
  return _page_out(entries, total, page, pageSize)


@router.post("/boards/{board_id}/active-counts/recompute", response_model=RecomputeOut)
async def recompute_counts(board_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> RecomputeOut:
  await require_board_member(board_id, user.id, db)
  counts = await load_balancer.recompute_board_counts(db, board_id)
  await db.commit()
  logger.info("recomputed active task counts on board %s: %s", board_id, counts)
  return RecomputeOut(counts=counts)
