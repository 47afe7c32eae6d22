"""chat users and messages

Revision ID: 5c1e2a9d7b40
Revises:
Create Date: 2026-10-19 09:12:44.512031

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5c1e2a9d7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "chat_user",
        sa.Column("handle", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("handle"),
    )
    op.create_table(
        "chat_message",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("sender", sa.String(length=64), nullable=False),
        sa.Column("receiver", sa.String(length=64), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.ForeignKeyConstraint(["receiver"], ["chat_user.handle"]),
        sa.ForeignKeyConstraint(["sender"], ["chat_user.handle"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_chat_message_pair",
        "chat_message",
        ["sender", "receiver", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_chat_message_pair", table_name="chat_message")
    op.drop_table("chat_message")
    op.drop_table("chat_user")
