from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.errors import AuthError
from boardsync.models import Session as DbSession, User, as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
  user_id: str
  name: str
  email: str
  expires_at: datetime

  def brief(self) -> dict[str, str]:
    return {"id": self.user_id, "name": self.name, "email": self.email}

  def seconds_remaining(self, now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    return (self.expires_at - now).total_seconds()

  def expired(self, now: datetime | None = None) -> bool:
    return self.seconds_remaining(now) <= 0


async def authenticate(db: AsyncSession, token: str | None) -> Identity:
  """Resolve an opaque session token to the identity it was issued for.

  Raises AuthError for a missing, unknown or expired token, and for tokens whose
  user no longer exists or has been disabled.
  """
  token = (token or "").strip()
  if not token:
    raise AuthError("Authentication error: No token provided")
  if len(token) > 64:
    raise AuthError("Authentication error: Invalid token")

  res = await db.execute(select(DbSession).where(DbSession.id == token))
  s = res.scalar_one_or_none()
  if not s:
    raise AuthError("Authentication error: Invalid token")
  expires_at = as_utc(s.expires_at)
  if expires_at <= datetime.now(timezone.utc):
    raise AuthError("Authentication error: Session expired")

  ures = await db.execute(select(User).where(User.id == s.user_id))
  u = ures.scalar_one_or_none()
  if not u:
    raise AuthError("Authentication error: User not found")
  if not u.active:
    logger.info("rejected token for disabled user %s", u.id)
    raise AuthError("Authentication error: User disabled")
  return Identity(user_id=u.id, name=u.name, email=u.email, expires_at=expires_at)
