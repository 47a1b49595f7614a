"""User model (owned by the identity collaborator; read-only for chat)."""

from typing import Optional

from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin


class User(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(primary_key=True, max_length=64)
    email: str = Field(unique=True, index=True, nullable=False)
    first_name: str = Field(default="", nullable=False)
    last_name: str = Field(default="", nullable=False)
    profile_image_url: Optional[str] = None
    is_admin: bool = Field(default=False, nullable=False)
    admin_level: int = Field(default=0, nullable=False)  # 0=user, 1=admin, 2=super admin
    is_banned: bool = Field(default=False, nullable=False)

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.email.split("@")[0]
