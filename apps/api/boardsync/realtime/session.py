from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boardsync.db import SessionLocal
from boardsync.deps import require_board_member
from boardsync.errors import BoardSyncError
from boardsync.models import User, utcnow
from boardsync.realtime.hub import BroadcastHub, Closer, Connection, Sender, event
from boardsync.session_gate import Identity

logger = logging.getLogger(__name__)

# Client event -> extra field copied through to peers.
RELAYED_EVENTS = {
  "task_editing_start": None,
  "task_editing_stop": None,
  "task_typing": "isTyping",
  "cursor_position": "position",
}


def _board_id_of(data: Any) -> str | None:
  if isinstance(data, str):
    return data.strip() or None
  if isinstance(data, dict):
    value = data.get("boardId")
    return str(value) if value else None
  return None


class RealtimeSession:
  """One authenticated realtime connection and the client events it sends."""

  def __init__(
    self,
    hub: BroadcastHub,
    identity: Identity,
    send: Sender,
    *,
    close: Closer | None = None,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
  ) -> None:
    self.hub = hub
    self.identity = identity
    self._send = send
    self._close = close
    self._session_factory = session_factory
    self.conn: Connection | None = None

  async def on_connect(self) -> Connection:
    self.conn = self.hub.connect(self.identity, self._send, close=self._close)
    self.conn.on_evicted = self._on_evicted
    await self._mark_presence(online=True)
    return self.conn

  async def _on_evicted(self) -> None:
    if not self.hub.is_user_connected(self.identity.user_id):
      await self._mark_presence(online=False)

  async def on_disconnect(self) -> list[str]:
    if self.conn is None:
      return []
    left = self.hub.disconnect(self.conn)
    if not self.hub.is_user_connected(self.identity.user_id):
      await self._mark_presence(online=False)
    return left

  def error(self, message: str) -> None:
    if self.conn is not None:
      self.conn.enqueue(event("error", {"message": message}))

  async def handle_raw(self, raw: str) -> None:
    try:
      message = json.loads(raw)
    except ValueError:
      self.error("Malformed message")
      return
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
      self.error("Malformed message")
      return
    await self.handle(message)

  async def handle(self, message: dict[str, Any]) -> None:
    kind = message.get("type")
    data = message.get("data")
    if kind == "ping":
      self.conn.enqueue(event("pong", data if data is not None else {}))
    elif kind == "join_board":
      await self.join_board(_board_id_of(data))
    elif kind == "leave_board":
      self.leave_board(_board_id_of(data))
    elif kind in RELAYED_EVENTS:
      self.relay(kind, data)
    else:
      self.error(f"Unknown event: {kind}")

  async def join_board(self, board_id: str | None) -> list[dict[str, str]] | None:
    if not board_id:
      self.error("boardId is required")
      return None
    try:
      async with self._session_factory() as db:
        await require_board_member(board_id, self.identity.user_id, db)
    except BoardSyncError as exc:
      logger.info("join_board %s refused for user %s: %s", board_id, self.identity.user_id, exc.message)
      self.error(f"Failed to join board: {exc.message}")
      return None
    except SQLAlchemyError:
      logger.exception("join_board %s failed for user %s", board_id, self.identity.user_id)
      self.error("Failed to join board")
      return None
    return self.hub.join(self.conn, board_id)

  def leave_board(self, board_id: str | None) -> bool:
    if not board_id:
      self.error("boardId is required")
      return False
    return self.hub.leave(self.conn, board_id)

  def relay(self, kind: str, data: Any) -> int:
    if not isinstance(data, dict):
      self.error(f"{kind} requires an object payload")
      return 0
    board_id = _board_id_of(data)
    if not board_id or board_id not in self.conn.boards:
      self.error("Join the board before sending board events")
      return 0
    payload: dict[str, Any] = {
      "taskId": data.get("taskId"),
      "user": {"id": self.identity.user_id, "name": self.identity.name},
    }
    extra = RELAYED_EVENTS[kind]
    if extra:
      payload[extra] = data.get(extra)
    return self.hub.broadcast(board_id, kind, payload, exclude=self.conn)

  async def _mark_presence(self, *, online: bool) -> None:
    try:
      async with self._session_factory() as db:
        await db.execute(
          update(User).where(User.id == self.identity.user_id).values(is_online=online, last_seen=utcnow())
        )
        await db.commit()
    except SQLAlchemyError:
      # Presence flags are advisory; the connection itself stays usable.
      logger.exception("updating online status for user %s", self.identity.user_id)
