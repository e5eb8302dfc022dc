"""Presence rooms and ordered event fan-out for realtime connections.

A room is the set of live connections attached to one board. The hub keeps an
explicit ``board id -> {connection id -> connection}`` mapping; nothing here is
persisted. Room changes and broadcasts are plain synchronous mutations, so on
one event loop they are atomic with respect to each other.

Each connection owns a bounded outbound queue drained by its own writer task.
``broadcast`` only enqueues, which keeps a slow or dead peer from stalling the
mutation that triggered the event, and preserves per-connection order.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from boardsync.config import settings
from boardsync.metrics import RuntimeMetrics, runtime_metrics
from boardsync.session_gate import Identity

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]
Closer = Callable[[], Awaitable[None]]

_CLOSE = object()


def event(event_type: str, data: Any) -> dict[str, Any]:
  return {"type": event_type, "data": data}


class Connection:
  def __init__(
    self,
    identity: Identity,
    send: Sender,
    *,
    close: Closer | None = None,
    queue_size: int = 256,
    send_timeout: float = 10.0,
  ) -> None:
    self.id = str(uuid.uuid4())
    self.identity = identity
    self.boards: set[str] = set()
    self.closed = False
    self.on_failure: Callable[[Connection], None] | None = None
    self.on_evicted: Callable[[], Awaitable[None]] | None = None
    self._send = send
    self._close = close
    self._send_timeout = send_timeout
    self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, queue_size))
    self._writer: asyncio.Task | None = None

  @property
  def user_id(self) -> str:
    return self.identity.user_id

  def start(self) -> None:
    if self._writer is None:
      self._writer = asyncio.create_task(self._write_loop(), name=f"realtime-writer-{self.id}")

  def enqueue(self, message: dict[str, Any]) -> bool:
    if self.closed:
      return False
    try:
      self._queue.put_nowait(message)
    except asyncio.QueueFull:
      return False
    return True

  def shutdown(self) -> None:
    if self.closed and self._writer is not None and self._writer.done():
      return
    self.closed = True
    while not self._queue.empty():
      self._queue.get_nowait()
      self._queue.task_done()
    self._queue.put_nowait(_CLOSE)

  async def flush(self) -> None:
    """Wait until everything queued so far has been handed to the socket."""
    await self._queue.join()

  async def wait_closed(self) -> None:
    if self._writer is not None:
      await self._writer

  async def _write_loop(self) -> None:
    while True:
      msg = await self._queue.get()
      try:
        if msg is _CLOSE:
          break
        try:
          await asyncio.wait_for(self._send(msg), timeout=self._send_timeout)
        except Exception as exc:
          logger.warning("realtime send to %s (user %s) failed: %r", self.id, self.user_id, exc)
          self.closed = True
          if self.on_failure is not None:
            self.on_failure(self)
          break
      finally:
        self._queue.task_done()
    # Release anyone waiting in flush() after a failed send.
    while not self._queue.empty():
      self._queue.get_nowait()
      self._queue.task_done()
    if self._close is not None:
      try:
        await self._close()
      except Exception as exc:
        logger.debug("closing realtime connection %s: %r", self.id, exc)


class _OrderLock:
  def __init__(self) -> None:
    self.lock = asyncio.Lock()
    self.holders = 0


class BroadcastHub:
  def __init__(
    self,
    *,
    queue_size: int | None = None,
    send_timeout: float | None = None,
    metrics: RuntimeMetrics | None = None,
  ) -> None:
    self._queue_size = int(queue_size or settings.realtime_queue_size)
    self._send_timeout = float(send_timeout or settings.realtime_send_timeout_seconds)
    self._metrics = metrics or runtime_metrics
    self._connections: dict[str, Connection] = {}
    self._rooms: dict[str, dict[str, Connection]] = {}
    self._commit_locks: dict[str, _OrderLock] = {}
    self._background: set[asyncio.Task] = set()
    self._closed = False

  # -- lifecycle -------------------------------------------------------------

  def connect(self, identity: Identity, send: Sender, *, close: Closer | None = None) -> Connection:
    if self._closed:
      raise RuntimeError("hub is closed")
    conn = Connection(identity, send, close=close, queue_size=self._queue_size, send_timeout=self._send_timeout)
    conn.on_failure = self._evict
    self._connections[conn.id] = conn
    conn.start()
    self._metrics.observe_connection(opened=True)
    logger.info("realtime connect %s user=%s", conn.id, identity.user_id)
    return conn

  def disconnect(self, conn: Connection) -> list[str]:
    """Drop the connection from every room it joined; idempotent."""
    if self._connections.pop(conn.id, None) is None:
      # Already gone; make sure no room still points at it.
      for board_id in list(conn.boards):
        self._remove(conn, board_id, message=f"{conn.identity.name} disconnected")
      return []
    left = sorted(conn.boards)
    for board_id in left:
      self._remove(conn, board_id, message=f"{conn.identity.name} disconnected")
    conn.shutdown()
    self._metrics.observe_connection(opened=False)
    logger.info("realtime disconnect %s user=%s boards=%s", conn.id, conn.user_id, left)
    return left

  async def close(self) -> None:
    self._closed = True
    conns = list(self._connections.values())
    self._connections.clear()
    self._rooms.clear()
    for conn in conns:
      conn.shutdown()
    for conn in conns:
      await conn.wait_closed()
    await self.settle()

  async def settle(self) -> None:
    """Wait for eviction callbacks scheduled so far."""
    while True:
      pending = [t for t in self._background if not t.done()]
      if not pending:
        return
      await asyncio.gather(*pending, return_exceptions=True)

  # -- rooms -----------------------------------------------------------------

  def join(self, conn: Connection, board_id: str) -> list[dict[str, str]]:
    if conn.closed or self._connections.get(conn.id) is not conn:
      return []
    room = self._rooms.setdefault(board_id, {})
    if conn.id not in room:
      first_for_user = not any(c.user_id == conn.user_id for c in room.values())
      room[conn.id] = conn
      conn.boards.add(board_id)
      if first_for_user:
        self.broadcast(
          board_id,
          "user_joined",
          {"user": conn.identity.brief(), "message": f"{conn.identity.name} joined the board"},
          exclude=conn,
        )
    roster = self.roster(board_id)
    conn.enqueue(event("online_users", roster))
    return roster

  def leave(self, conn: Connection, board_id: str) -> bool:
    return self._remove(conn, board_id, message=f"{conn.identity.name} left the board")

  def _remove(self, conn: Connection, board_id: str, *, message: str) -> bool:
    room = self._rooms.get(board_id)
    conn.boards.discard(board_id)
    if not room or room.pop(conn.id, None) is None:
      return False
    if not room:
      del self._rooms[board_id]
    elif not any(c.user_id == conn.user_id for c in room.values()):
      self.broadcast(board_id, "user_left", {"user": conn.identity.brief(), "message": message})
    return True

  def roster(self, board_id: str) -> list[dict[str, str]]:
    seen: dict[str, dict[str, str]] = {}
    for c in self._rooms.get(board_id, {}).values():
      seen.setdefault(c.user_id, c.identity.brief())
    return list(seen.values())

  def is_user_connected(self, user_id: str) -> bool:
    return any(c.user_id == user_id for c in self._connections.values())

  # -- fan-out ---------------------------------------------------------------

  @asynccontextmanager
  async def commit_order(self, board_id: str) -> AsyncIterator[None]:
    """Held around log append, commit and broadcast for one board.

    Holding it makes the broadcast order of a board equal its commit order.
    The entry is dropped once nobody holds or waits on it.
    """
    entry = self._commit_locks.get(board_id)
    if entry is None:
      entry = self._commit_locks[board_id] = _OrderLock()
    entry.holders += 1
    try:
      async with entry.lock:
        yield
    finally:
      entry.holders -= 1
      if entry.holders == 0 and self._commit_locks.get(board_id) is entry:
        del self._commit_locks[board_id]

  def broadcast(self, board_id: str, event_type: str, payload: Any, *, exclude: Connection | None = None) -> int:
    message = event(event_type, payload)
    delivered = 0
    failed: list[Connection] = []
    for conn in list(self._rooms.get(board_id, {}).values()):
      if conn is exclude:
        continue
      if conn.enqueue(message):
        delivered += 1
      else:
        failed.append(conn)
    for conn in failed:
      logger.warning("dropping realtime connection %s on board %s: outbound queue full or closed", conn.id, board_id)
      self._evict(conn)
    self._metrics.observe_broadcast(delivered=delivered, dropped=len(failed))
    return delivered

  def _evict(self, conn: Connection) -> None:
    was_live = conn.id in self._connections
    self.disconnect(conn)
    if was_live and conn.on_evicted is not None and not self._closed:
      task = asyncio.create_task(conn.on_evicted())
      self._background.add(task)
      task.add_done_callback(self._background.discard)

  def stats(self) -> dict[str, int]:
    return {
      "connections": len(self._connections),
      "rooms": len(self._rooms),
      "users": len({c.user_id for c in self._connections.values()}),
    }
