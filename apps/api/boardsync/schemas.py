from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

TaskStatus = Literal["Todo", "In Progress", "Done"]
TaskPriority = Literal["Low", "Medium", "High"]


def _strip(value: object) -> object:
  return value.strip() if isinstance(value, str) else value


class UserBrief(BaseModel):
  id: str
  name: str
  email: str


class UserOut(BaseModel):
  id: str
  name: str
  email: str
  activeTasksCount: int
  isOnline: bool
  lastSeen: datetime | None = None
  createdAt: datetime


class RegisterIn(BaseModel):
  name: str = Field(min_length=2, max_length=50)
  email: str = Field(min_length=3, max_length=320)
  password: str = Field(min_length=6, max_length=200)

  @field_validator("name", "email", mode="before")
  @classmethod
  def _trim(cls, v: object) -> object:
    return _strip(v)

  @field_validator("email")
  @classmethod
  def _email_shape(cls, v: str) -> str:
    if "@" not in v or v.startswith("@") or v.endswith("@"):
      raise ValueError("Please provide a valid email")
    return v.lower()


class LoginIn(BaseModel):
  email: str = Field(min_length=1, max_length=320)
  password: str = Field(min_length=1, max_length=200)


class BoardCreateIn(BaseModel):
  name: str = Field(min_length=1, max_length=100)
  description: str = Field(default="", max_length=300)

  @field_validator("name", "description", mode="before")
  @classmethod
  def _trim(cls, v: object) -> object:
    return _strip(v)


class BoardOut(BaseModel):
  id: str
  name: str
  description: str
  ownerId: str
  createdAt: datetime
  updatedAt: datetime


class AuthOut(BaseModel):
  user: UserOut
  token: str
  expiresAt: datetime
  board: BoardOut | None = None


class BoardMemberIn(BaseModel):
  email: str = Field(min_length=3, max_length=320)


class BoardMemberOut(BaseModel):
  userId: str
  name: str
  email: str
  role: str
  activeTasksCount: int
  isOnline: bool


class TaskCreateIn(BaseModel):
  title: str = Field(min_length=1, max_length=100)
  description: str = Field(default="", max_length=500)
  priority: TaskPriority = "Medium"
  assignedTo: str | None = None

  @field_validator("title", "description", mode="before")
  @classmethod
  def _trim(cls, v: object) -> object:
    return _strip(v)


class TaskUpdateIn(BaseModel):
  version: int = Field(ge=1)
  title: str | None = Field(default=None, min_length=1, max_length=100)
  description: str | None = Field(default=None, max_length=500)
  status: TaskStatus | None = None
  priority: TaskPriority | None = None
  assignedTo: str | None = None
  position: int | None = Field(default=None, ge=0)

  @field_validator("title", "description", mode="before")
  @classmethod
  def _trim(cls, v: object) -> object:
    return _strip(v)


class TaskMoveIn(BaseModel):
  version: int = Field(ge=1)
  status: TaskStatus
  position: int | None = Field(default=None, ge=0)


class TaskOut(BaseModel):
  id: str
  boardId: str
  title: str
  description: str
  status: str
  priority: str
  assignedTo: str
  assignee: UserBrief | None = None
  lastEditedBy: str | None = None
  position: int
  version: int
  createdAt: datetime
  updatedAt: datetime


class TaskRef(BaseModel):
  id: str
  title: str


class ActionLogOut(BaseModel):
  id: str
  user: UserBrief | None
  action: str
  message: str
  taskId: str | None
  task: TaskRef | None = None
  boardId: str
  metadata: dict[str, Any]
  createdAt: datetime


class ActivityPageOut(BaseModel):
  entries: list[ActionLogOut]
  totalCount: int
  page: int
  pageSize: int
  totalPages: int
  hasNextPage: bool
  hasPrevPage: bool


class RecomputeOut(BaseModel):
  counts: dict[str, int]
