from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

import redis

from boardsync.config import settings
from boardsync.errors import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass
class _Bucket:
  reset_at: float
  count: int


class RateLimiter:
  """
  Fixed-window limiter keyed by arbitrary strings.

  Uses Redis when `redis_url` is configured so replicas share counts; otherwise
  (or while Redis is unreachable) counts live in this process.
  """

  def __init__(self, redis_url: str | None = None) -> None:
    self._lock = Lock()
    self._buckets: dict[str, _Bucket] = {}
    self._redis: redis.Redis | None = None
    url = redis_url if redis_url is not None else settings.redis_url
    if url:
      try:
        self._redis = redis.Redis.from_url(url, decode_responses=True)
      except (ValueError, redis.RedisError) as exc:
        logger.warning("rate limiter: redis unavailable (%r); using in-process buckets", exc)
        self._redis = None

  def hit(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    """
    Returns (allowed, retry_after_seconds).
    """
    if self._redis is not None:
      try:
        return self._hit_redis(key, limit=limit, window_seconds=window_seconds)
      except redis.RedisError as exc:
        logger.warning("rate limiter: redis error %r; falling back to in-process buckets", exc)

    now = time.time()
    with self._lock:
      b = self._buckets.get(key)
      if b is None or now >= b.reset_at:
        self._buckets[key] = _Bucket(reset_at=now + window_seconds, count=1)
        return True, 0
      if b.count >= limit:
        return False, max(1, int(b.reset_at - now))
      b.count += 1
      return True, 0

  def _hit_redis(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    rk = f"rl:{key}"
    pipe = self._redis.pipeline()
    pipe.incr(rk, 1)
    pipe.ttl(rk)
    count, ttl = pipe.execute()
    if int(count) == 1:
      self._redis.expire(rk, int(window_seconds))
      ttl = int(window_seconds)
    retry = max(1, int(ttl)) if int(ttl) > 0 else int(window_seconds)
    if int(count) > int(limit):
      return False, retry
    return True, 0

  def enforce(self, key: str, *, limit: int, window_seconds: int = 60) -> None:
    allowed, retry_after = self.hit(key, limit=limit, window_seconds=window_seconds)
    if not allowed:
      logger.info("rate limited %s (retry in %ss)", key.split(":", 3)[:3], retry_after)
      raise RateLimitedError(retry_after)

  def reset_prefix(self, prefix: str) -> None:
    with self._lock:
      for k in list(self._buckets.keys()):
        if k.startswith(prefix):
          del self._buckets[k]


limiter = RateLimiter()
