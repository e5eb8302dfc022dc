from __future__ import annotations

import logging

from fastapi import APIRouter, Cookie, Depends, Request, Response, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync import activity
from boardsync.config import settings
from boardsync.deps import bearer_token, client_ip, get_current_user, get_db, get_hub
from boardsync.errors import AuthError, ForbiddenError, ValidationError
from boardsync.models import Board, BoardMember, Session as DbSession, User, utcnow
from boardsync.rate_limit import limiter
from boardsync.realtime.hub import BroadcastHub
from boardsync.schemas import AuthOut, LoginIn, RegisterIn, UserOut
from boardsync.security import SESSION_COOKIE_NAME, hash_password, new_session_expires_at, new_session_token, verify_password
from boardsync.sync.snapshots import board_out, user_brief, user_out

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _set_session_cookie(response: Response, s: DbSession) -> None:
  response.set_cookie(
    key=SESSION_COOKIE_NAME,
    value=s.id,
    httponly=True,
    secure=settings.cookie_secure,
    samesite="lax",
    domain=settings.cookie_domain or None,
    max_age=int(settings.session_ttl_days * 86400),
    expires=s.expires_at,
    path="/",
  )


def _new_session(request: Request, user_id: str) -> DbSession:
  return DbSession(
    id=new_session_token(),
    user_id=user_id,
    expires_at=new_session_expires_at(),
    created_ip=client_ip(request),
    user_agent=request.headers.get("user-agent"),
  )


@router.post("/register", response_model=AuthOut, status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterIn, request: Request, response: Response, db: AsyncSession = Depends(get_db)) -> AuthOut:
  exists = await db.execute(select(User.id).where(User.email == payload.email))
  if exists.scalar_one_or_none():
    raise ValidationError("User already exists with this email")

  u = User(name=payload.name, email=payload.email, password_hash=hash_password(payload.password))
  db.add(u)
  await db.flush()
  b = Board(name=f"{u.name}'s Board"[:100], description="Your personal task board", owner_id=u.id)
  db.add(b)
  await db.flush()
  db.add(BoardMember(board_id=b.id, user_id=u.id, role="owner"))
  s = _new_session(request, u.id)
  db.add(s)
  await activity.append(db, actor=user_brief(u), action="user_joined", message=f"{u.name} joined the board", board_id=b.id)
  await db.commit()
  await db.refresh(u)

  logger.info("registered user %s with board %s", u.id, b.id)
  _set_session_cookie(response, s)
  return AuthOut(user=user_out(u), token=s.id, expiresAt=s.expires_at, board=board_out(b))


@router.post("/login", response_model=AuthOut)
async def login(payload: LoginIn, request: Request, response: Response, db: AsyncSession = Depends(get_db)) -> AuthOut:
  ip = client_ip(request) or "unknown"
  email_key = (payload.email or "").strip().lower()
  limiter.enforce(f"auth:login:ip:{ip}", limit=int(settings.rate_limit_login_ip_per_minute))
  if email_key:
    limiter.enforce(f"auth:login:email:{email_key}", limit=int(settings.rate_limit_login_email_per_minute))

  res = await db.execute(select(User).where(User.email == email_key))
  u = res.scalar_one_or_none()
  if not u or not verify_password(payload.password, u.password_hash):
    logger.info("failed login from %s", ip)
    raise AuthError("Invalid credentials")
  if not u.active:
    raise ForbiddenError("User disabled")

  s = _new_session(request, u.id)
  db.add(s)
  u.is_online = True
  u.last_seen = utcnow()
  await db.commit()
  await db.refresh(u)

  # First board the user belongs to, oldest first.
  bres = await db.execute(
    select(Board)
    .join(BoardMember, BoardMember.board_id == Board.id)
    .where(BoardMember.user_id == u.id)
    .order_by(Board.created_at.asc(), Board.id.asc())
    .limit(1)
  )
  b = bres.scalar_one_or_none()

  _set_session_cookie(response, s)
  return AuthOut(user=user_out(u), token=s.id, expiresAt=s.expires_at, board=board_out(b) if b else None)


@router.post("/logout")
async def logout(
  request: Request,
  response: Response,
  user: User = Depends(get_current_user),
  hub: BroadcastHub = Depends(get_hub),
  db: AsyncSession = Depends(get_db),
  session_id: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> dict:
  token = bearer_token(request) or session_id
  await db.execute(delete(DbSession).where(DbSession.id == token, DbSession.user_id == user.id))
  if not hub.is_user_connected(user.id):
    user.is_online = False
  user.last_seen = utcnow()
  await db.commit()
  response.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
  return {"ok": True}


@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)) -> UserOut:
  return user_out(user)
