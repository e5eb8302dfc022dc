from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.deps import get_current_user, get_db, get_hub, require_board_member
from boardsync.errors import ForbiddenError, NotFoundError, ValidationError
from boardsync.models import Board, BoardMember, User
from boardsync.realtime.hub import BroadcastHub
from boardsync.schemas import BoardCreateIn, BoardMemberIn, BoardMemberOut, BoardOut, UserBrief
from boardsync.sync.snapshots import board_out

router = APIRouter(prefix="/boards", tags=["boards"])


def _member_out(m: BoardMember, u: User) -> BoardMemberOut:
  return BoardMemberOut(
    userId=u.id,
    name=u.name,
    email=u.email,
    role=m.role,
    activeTasksCount=int(u.active_tasks_count or 0),
    isOnline=bool(u.is_online),
  )


@router.get("", response_model=list[BoardOut])
async def list_boards(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[BoardOut]:
  res = await db.execute(
    select(Board)
    .join(BoardMember, BoardMember.board_id == Board.id)
    .where(BoardMember.user_id == user.id)
    .order_by(Board.updated_at.desc())
  )
  return [board_out(b) for b in res.scalars().all()]


@router.post("", response_model=BoardOut, status_code=status.HTTP_201_CREATED)
async def create_board(payload: BoardCreateIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> BoardOut:
  if not payload.name:
    raise ValidationError("name is required")
  b = Board(name=payload.name, description=payload.description or "", owner_id=user.id)
  db.add(b)
  await db.flush()
  db.add(BoardMember(board_id=b.id, user_id=user.id, role="owner"))
  await db.commit()
  return board_out(b)


@router.get("/{board_id}", response_model=BoardOut)
async def get_board(board_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> BoardOut:
  return board_out(await require_board_member(board_id, user.id, db))


@router.get("/{board_id}/members", response_model=list[BoardMemberOut])
async def list_members(board_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[BoardMemberOut]:
  await require_board_member(board_id, user.id, db)
  res = await db.execute(
    select(BoardMember, User)
    .join(User, User.id == BoardMember.user_id)
    .where(BoardMember.board_id == board_id)
    .order_by(User.name.asc(), User.id.asc())
  )
  return [_member_out(m, u) for m, u in res.all()]


@router.post("/{board_id}/members", response_model=BoardMemberOut, status_code=status.HTTP_201_CREATED)
async def add_member(
  board_id: str,
  payload: BoardMemberIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> BoardMemberOut:
  b = await require_board_member(board_id, user.id, db)
  if b.owner_id != user.id:
    raise ForbiddenError("Only the board owner can add members")
  email = payload.email.strip().lower()
  res = await db.execute(select(User).where(User.email == email))
  target = res.scalar_one_or_none()
  if not target:
    raise NotFoundError("User not found")
  exists = await db.execute(select(BoardMember.id).where(BoardMember.board_id == board_id, BoardMember.user_id == target.id))
  if exists.scalar_one_or_none():
    raise ValidationError("User is already a member of this board")
  m = BoardMember(board_id=board_id, user_id=target.id, role="member")
  db.add(m)
  try:
    await db.commit()
  except IntegrityError as exc:
    raise ValidationError("User is already a member of this board") from exc
  return _member_out(m, target)


@router.get("/{board_id}/presence", response_model=list[UserBrief])
async def presence(
  board_id: str,
  user: User = Depends(get_current_user),
  hub: BroadcastHub = Depends(get_hub),
  db: AsyncSession = Depends(get_db),
) -> list[UserBrief]:
  await require_board_member(board_id, user.id, db)
  return [UserBrief(**entry) for entry in hub.roster(board_id)]
