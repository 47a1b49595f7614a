"""Chat channel model. Name is globally unique; only the description is editable."""

from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin


class Channel(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "chat_channels"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True, nullable=False, max_length=100)
    description: Optional[str] = None
    is_private: bool = Field(default=False, nullable=False)
    created_by_id: Optional[str] = Field(
        default=None,
        sa_column=sa.Column(
            sa.String(length=64), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
        ),
    )
