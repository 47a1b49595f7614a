"""Chat message model (immutable once written)."""

from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin


class Message(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "chat_messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    content: str = Field(nullable=False)
    channel_id: int = Field(foreign_key="chat_channels.id", nullable=False, index=True)
    # Nullable so history survives deletion of the author
    user_id: Optional[str] = Field(
        default=None,
        sa_column=sa.Column(
            sa.String(length=64),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
