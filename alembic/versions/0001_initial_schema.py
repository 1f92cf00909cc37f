"""Initial support inbox schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2025-03-01

Creates users, tickets, messages, ticket_history, email_opens, attachments,
tags and ticket_tags.

On PostgreSQL also creates:
- GIN full-text indexes matching the search tsvector expressions
- pg_trgm GIN indexes backing the ILIKE search strategies
  (message body and sender, ticket subject and customer email)
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
PENDING_WHERE = "scheduled_at IS NOT NULL AND sent_at IS NULL"

TRIGRAM_INDEXES = (
    ("idx_messages_body_trgm", "messages", "body"),
    ("idx_messages_sender_email_trgm", "messages", "sender_email"),
    ("idx_tickets_subject_trgm", "tickets", "subject"),
    ("idx_tickets_customer_email_trgm", "tickets", "customer_email"),
)


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _is_postgresql() -> bool:
    return op.get_context().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("signature", sa.Text(), nullable=True),
        sa.Column("agent_email", sa.String(length=320), nullable=True),
        sa.Column("active", sa.Boolean(), server_default=sa.text("TRUE"), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_agent_email", "users", ["agent_email"])

    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("customer_email", sa.String(length=320), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("reply_to_email", sa.String(length=320), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("priority", sa.String(length=32), nullable=False),
        sa.Column("assignee_id", sa.Integer(), nullable=True),
        _timestamp("follow_up_at", nullable=True),
        sa.Column("message_id", sa.String(length=998), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["assignee_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_tickets_status", "tickets", ["status"])
    op.create_index("idx_tickets_assignee", "tickets", ["assignee_id"])
    op.create_index("idx_tickets_customer_email", "tickets", ["customer_email"])
    op.create_index("idx_tickets_message_id", "tickets", ["message_id"])
    op.create_index("idx_tickets_follow_up", "tickets", ["follow_up_at"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ticket_id", sa.Integer(), nullable=False),
        sa.Column("sender_email", sa.String(length=320), nullable=False),
        sa.Column("sender_name", sa.String(length=255), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("body_html", sa.Text(), nullable=True),
        sa.Column("body_html_stripped", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("message_id", sa.String(length=998), nullable=True),
        sa.Column("email_metadata", JSON_TYPE, nullable=True),
        sa.Column("to_emails", JSON_TYPE, nullable=True),
        sa.Column("cc_emails", JSON_TYPE, nullable=True),
        sa.Column("tracking_token", sa.String(length=64), nullable=True),
        _timestamp("scheduled_at", nullable=True),
        _timestamp("sent_at", nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id"),
        sa.UniqueConstraint("tracking_token"),
    )
    op.create_index("idx_messages_ticket_created", "messages", ["ticket_id", "created_at"])
    op.create_index("idx_messages_sender_email", "messages", ["sender_email"])
    op.create_index(
        "idx_messages_pending",
        "messages",
        ["scheduled_at"],
        postgresql_where=sa.text(PENDING_WHERE),
        sqlite_where=sa.text(PENDING_WHERE),
    )

    op.create_table(
        "ticket_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ticket_id", sa.Integer(), nullable=False),
        sa.Column("field_name", sa.String(length=64), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("changed_by_user_id", sa.Integer(), nullable=True),
        sa.Column("changed_by_email", sa.String(length=320), nullable=True),
        sa.Column("changed_by_name", sa.String(length=255), nullable=True),
        sa.Column("change_source", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("changed_at"),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["changed_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_ticket_history_ticket_changed", "ticket_history", ["ticket_id", "changed_at"]
    )

    op.create_table(
        "email_opens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("tracking_token", sa.String(length=64), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        _timestamp("opened_at"),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_email_opens_message", "email_opens", ["message_id", "opened_at"])

    op.create_table(
        "attachments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("mime_type", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_attachments_message", "attachments", ["message_id"])

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "ticket_tags",
        sa.Column("ticket_id", sa.Integer(), nullable=False),
        sa.Column("tag_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("ticket_id", "tag_id"),
    )
    op.create_index("idx_ticket_tags_tag", "ticket_tags", ["tag_id"])

    if not _is_postgresql():
        return

    op.execute(
        "CREATE INDEX idx_tickets_fts ON tickets USING gin ("
        "to_tsvector('english', coalesce(subject, '') || ' ' || "
        "coalesce(customer_name, '') || ' ' || coalesce(customer_email, '')))"
    )
    op.execute(
        "CREATE INDEX idx_messages_fts ON messages USING gin ("
        "to_tsvector('english', coalesce(body, '') || ' ' || coalesce(sender_name, '')))"
    )

    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")
    for index_name, table_name, column in TRIGRAM_INDEXES:
        op.create_index(
            index_name,
            table_name,
            [column],
            postgresql_using="gin",
            postgresql_ops={column: "gin_trgm_ops"},
        )


def downgrade() -> None:
    if _is_postgresql():
        for index_name, table_name, _column in reversed(TRIGRAM_INDEXES):
            op.drop_index(index_name, table_name=table_name)
        op.execute("DROP INDEX IF EXISTS idx_messages_fts")
        op.execute("DROP INDEX IF EXISTS idx_tickets_fts")

    op.drop_table("ticket_tags")
    op.drop_table("tags")
    op.drop_table("attachments")
    op.drop_table("email_opens")
    op.drop_table("ticket_history")
    op.drop_table("messages")
    op.drop_table("tickets")
    op.drop_table("users")
