# SQLModel definitions - imported here to ensure metadata is populated for Alembic.
from .base import CreatedAtMixin  # noqa: F401
from .user import User  # noqa: F401
from .channel import Channel  # noqa: F401
from .message import Message  # noqa: F401
