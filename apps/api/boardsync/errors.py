from __future__ import annotations

from typing import Any


class BoardSyncError(Exception):
  status_code = 500

  def __init__(self, message: str) -> None:
    super().__init__(message)
    self.message = message

  def body(self) -> dict[str, Any]:
    return {"detail": self.message}


class ValidationError(BoardSyncError):
  status_code = 400


class AuthError(BoardSyncError):
  status_code = 401


class ForbiddenError(BoardSyncError):
  status_code = 403


class NotFoundError(BoardSyncError):
  status_code = 404


class AssignmentUnavailableError(BoardSyncError):
  status_code = 409

  def __init__(self, message: str = "No available users for assignment") -> None:
    super().__init__(message)


class AssignmentContendedError(BoardSyncError):
  status_code = 503

  def __init__(self, message: str = "Assignment contention too high; retry the request", *, retry_after: int = 1) -> None:
    super().__init__(message)
    self.retry_after = max(1, int(retry_after))


class ConflictError(BoardSyncError):
  """A mutation cited a version the store no longer holds.

  Not a fault: the caller gets the current server snapshot and decides whether
  to merge and resubmit or discard.
  """

  status_code = 409

  def __init__(self, *, snapshot: dict[str, Any], client_version: int | None, server_version: int) -> None:
    super().__init__("Conflict detected")
    self.snapshot = snapshot
    self.client_version = client_version
    self.server_version = server_version

  def body(self) -> dict[str, Any]:
    return {
      "conflict": True,
      "message": self.message,
      "serverVersion": self.snapshot,
      "clientVersion": self.client_version,
      "serverVersionNumber": self.server_version,
    }


class InternalError(BoardSyncError):
  status_code = 500

  def __init__(self, message: str = "Internal error") -> None:
    super().__init__(message)


class RateLimitedError(BoardSyncError):
  status_code = 429

  def __init__(self, retry_after: int) -> None:
    super().__init__("Too many requests")
    self.retry_after = max(1, int(retry_after))

  def body(self) -> dict[str, Any]:
    return {"detail": {"code": "rate_limited", "message": self.message, "retryAfterSeconds": self.retry_after}}
