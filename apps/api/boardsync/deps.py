from __future__ import annotations

from fastapi import Cookie, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.db import SessionLocal
from boardsync.errors import AuthError, ForbiddenError, NotFoundError
from boardsync.models import Board, BoardMember, User
from boardsync.realtime.hub import BroadcastHub
from boardsync.security import SESSION_COOKIE_NAME
from boardsync.session_gate import Identity, authenticate


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


def bearer_token(request: Request) -> str | None:
  auth = request.headers.get("authorization")
  if auth and auth.lower().startswith("bearer "):
    return auth.split(" ", 1)[1].strip()
  return None


async def get_identity(
  request: Request,
  db: AsyncSession = Depends(get_db),
  session_id: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> Identity:
  return await authenticate(db, bearer_token(request) or session_id)


async def get_current_user(identity: Identity = Depends(get_identity), db: AsyncSession = Depends(get_db)) -> User:
  res = await db.execute(select(User).where(User.id == identity.user_id))
  u = res.scalar_one_or_none()
  if not u:
    raise AuthError("User not found")
  return u


def get_hub(request: Request) -> BroadcastHub:
  return request.app.state.hub


async def require_board_member(board_id: str, user_id: str, db: AsyncSession) -> Board:
  res = await db.execute(select(Board).where(Board.id == board_id))
  b = res.scalar_one_or_none()
  if not b:
    raise NotFoundError("Board not found")
  mres = await db.execute(select(BoardMember.id).where(BoardMember.board_id == board_id, BoardMember.user_id == user_id))
  if not mres.scalar_one_or_none():
    raise ForbiddenError("No board access")
  return b


def client_ip(request: Request) -> str | None:
  return request.client.host if request.client else None
