"""Agent accounts."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Enum, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.enums import Role
from app.db.utils import now_utc


class User(Base):
    """
    A support agent.

    `email` is the login identity; `agent_email` is the address customers
    see on outbound mail (falls back to the shared inbox when unset).
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Role] = mapped_column(
        Enum(
            Role,
            name="user_role",
            native_enum=False,
            length=32,
            values_callable=lambda members: [member.value for member in members],
        ),
        default=Role.AGENT,
        nullable=False,
    )
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    agent_email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("TRUE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), nullable=False
    )

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
