"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.create_table(
    "users",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("email", sa.String(320), nullable=False),
    sa.Column("name", sa.String(120), nullable=False),
    sa.Column("password_hash", sa.String(), nullable=False),
    sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("active_tasks_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_users_email", "users", ["email"], unique=True)

  op.create_table(
    "sessions",
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("created_ip", sa.String(), nullable=True),
    sa.Column("user_agent", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_sessions_user_id", "sessions", ["user_id"], unique=False)

  op.create_table(
    "boards",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("description", sa.String(300), nullable=False, server_default=""),
    sa.Column("owner_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_boards_owner_id", "boards", ["owner_id"], unique=False)

  op.create_table(
    "board_members",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("board_id", sa.String(36), sa.ForeignKey("boards.id"), nullable=False),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("role", sa.String(16), nullable=False, server_default="member"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("board_id", "user_id", name="ux_board_members_board_user"),
  )
  op.create_index("ix_board_members_board_id", "board_members", ["board_id"], unique=False)
  op.create_index("ix_board_members_user_id", "board_members", ["user_id"], unique=False)

  op.create_table(
    "tasks",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("board_id", sa.String(36), sa.ForeignKey("boards.id"), nullable=False),
    sa.Column("title", sa.String(100), nullable=False),
    sa.Column("description", sa.Text(), nullable=False, server_default=""),
    sa.Column("status", sa.String(16), nullable=False, server_default="Todo"),
    sa.Column("priority", sa.String(16), nullable=False, server_default="Medium"),
    sa.Column("assigned_to", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("last_edited_by", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
    sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("board_id", "title", name="ux_tasks_board_title"),
  )
  op.create_index("ix_tasks_board_status", "tasks", ["board_id", "status"], unique=False)
  op.create_index("ix_tasks_assignee_status", "tasks", ["assigned_to", "status"], unique=False)

  op.create_table(
    "action_logs",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("action", sa.String(32), nullable=False),
    sa.Column("message", sa.String(200), nullable=False),
    sa.Column("task_id", sa.String(36), nullable=True),
    sa.Column("board_id", sa.String(36), sa.ForeignKey("boards.id"), nullable=False),
    sa.Column("metadata", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_action_logs_board_created", "action_logs", ["board_id", "created_at"], unique=False)
  op.create_index("ix_action_logs_user_created", "action_logs", ["user_id", "created_at"], unique=False)


def downgrade() -> None:
  op.drop_index("ix_action_logs_user_created", table_name="action_logs")
  op.drop_index("ix_action_logs_board_created", table_name="action_logs")
  op.drop_table("action_logs")
  op.drop_index("ix_tasks_assignee_status", table_name="tasks")
  op.drop_index("ix_tasks_board_status", table_name="tasks")
  op.drop_table("tasks")
  op.drop_index("ix_board_members_user_id", table_name="board_members")
  op.drop_index("ix_board_members_board_id", table_name="board_members")
  op.drop_table("board_members")
  op.drop_index("ix_boards_owner_id", table_name="boards")
  op.drop_table("boards")
  op.drop_index("ix_sessions_user_id", table_name="sessions")
  op.drop_table("sessions")
  op.drop_index("ix_users_email", table_name="users")
  op.drop_table("users")
