from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketState

from boardsync.db import SessionLocal
from boardsync.errors import AuthError
from boardsync.realtime.session import RealtimeSession
from boardsync.security import SESSION_COOKIE_NAME
from boardsync.session_gate import authenticate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

AUTH_FAILED_CLOSE_CODE = 4401
FLUSH_ON_EXPIRY_SECONDS = 2.0


def _token_from(websocket: WebSocket, token: str | None) -> str | None:
  if token:
    return token
  auth = websocket.headers.get("authorization")
  if auth and auth.lower().startswith("bearer "):
    return auth.split(" ", 1)[1].strip()
  return websocket.cookies.get(SESSION_COOKIE_NAME)


@router.websocket("/ws")
async def realtime(websocket: WebSocket, token: str | None = None) -> None:
  async with SessionLocal() as db:
    try:
      identity = await authenticate(db, _token_from(websocket, token))
    except AuthError as exc:
      logger.info("realtime handshake rejected: %s", exc.message)
      # Accept first so the client sees the close code and reason.
      await websocket.accept()
      await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason=exc.message)
      return

  await websocket.accept()

  async def _close() -> None:
    if WebSocketState.DISCONNECTED not in (websocket.client_state, websocket.application_state):
      await websocket.close()

  session = RealtimeSession(websocket.app.state.hub, identity, websocket.send_json, close=_close)
  conn = await session.on_connect()
  try:
    while True:
      remaining = identity.seconds_remaining()
      try:
        if remaining <= 0:
          raise asyncio.TimeoutError
        message = await asyncio.wait_for(websocket.receive(), timeout=remaining)
      except asyncio.TimeoutError:
        logger.info("realtime session for user %s expired", identity.user_id)
        session.error("Authentication error: Session expired")
        try:
          await asyncio.wait_for(conn.flush(), timeout=FLUSH_ON_EXPIRY_SECONDS)
        except asyncio.TimeoutError:
          pass
        break
      if message["type"] == "websocket.disconnect":
        break
      text = message.get("text")
      if text is None and message.get("bytes") is not None:
        text = message["bytes"].decode("utf-8", errors="replace")
      if text is not None:
        await session.handle_raw(text)
  finally:
    await session.on_disconnect()
    await conn.wait_closed()
