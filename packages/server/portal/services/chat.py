"""
Chat message store - durable channel and message records.

Every write commits before returning so the row is visible to the next
read on any session (no eventual consistency between the realtime and
the history paths).
"""

from __future__ import annotations

from datetime import timezone
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import desc, func
from sqlmodel import select

from portal.core.errors import ConflictError, NotFoundError, ValidationError
from portal.models.channel import Channel
from portal.models.message import Message
from portal.models.user import User
from portal_shared.schemas.chat import AuthorInfo, ChannelResponse, ChatMessagePayload

log = structlog.get_logger()

DEFAULT_HISTORY_LIMIT = 50

DEFAULT_CHANNELS: list[tuple[str, str]] = [
    ("general", "General discussion for all members"),
    ("economics", "Economics department discussions"),
    ("announcements", "Official announcements from administration"),
]


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

async def create_channel(
    session: AsyncSession,
    name: str,
    description: Optional[str] = None,
    is_private: bool = False,
    creator_id: Optional[str] = None,
) -> Channel:
    """Create a channel. Raises ConflictError if the name is taken."""
    result = await session.execute(select(Channel).where(Channel.name == name))
    if result.scalar_one_or_none():
        raise ConflictError(f"Channel '{name}' already exists")

    channel = Channel(
        name=name,
        description=description,
        is_private=is_private,
        created_by_id=creator_id,
    )
    session.add(channel)
    try:
        await session.commit()
    except IntegrityError:
        # Lost a race with a concurrent create of the same name
        await session.rollback()
        raise ConflictError(f"Channel '{name}' already exists")

    log.info("chat.channel_created", channel_id=channel.id, name=name, creator_id=creator_id)
    return channel


async def list_channels(session: AsyncSession) -> list[Channel]:
    """All channels ordered by name."""
    result = await session.execute(select(Channel).order_by(Channel.name))
    return list(result.scalars().all())


async def get_channel(session: AsyncSession, channel_id: int) -> Channel:
    channel = await session.get(Channel, channel_id)
    if channel is None:
        raise NotFoundError(f"Channel {channel_id} not found")
    return channel


async def update_channel_description(
    session: AsyncSession, channel_id: int, description: Optional[str]
) -> Channel:
    channel = await get_channel(session, channel_id)
    channel.description = description
    session.add(channel)
    await session.commit()
    log.info("chat.channel_updated", channel_id=channel_id)
    return channel


async def ensure_default_channels(
    session: AsyncSession, creator_id: Optional[str] = None
) -> list[Channel]:
    """Create the default channels when the table is empty. Returns what was created."""
    count = (await session.execute(select(func.count()).select_from(Channel))).scalar() or 0
    if count:
        return []

    created = []
    for name, description in DEFAULT_CHANNELS:
        created.append(
            await create_channel(session, name, description, creator_id=creator_id)
        )
    log.info("chat.default_channels_created", count=len(created))
    return created


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

async def append_message(
    session: AsyncSession,
    channel_id: int,
    author_id: Optional[str],
    content: str,
) -> Message:
    """
    Persist a message to a channel.

    Raises ValidationError for blank content and NotFoundError for an
    unknown channel. The returned message has its id assigned and is
    committed.
    """
    if not content or not content.strip():
        raise ValidationError("Message content must not be empty")

    if await session.get(Channel, channel_id) is None:
        raise NotFoundError(f"Channel {channel_id} not found")

    message = Message(channel_id=channel_id, user_id=author_id, content=content)
    session.add(message)
    await session.commit()
    return message


async def list_messages(
    session: AsyncSession, channel_id: int, limit: int = DEFAULT_HISTORY_LIMIT
) -> list[Message]:
    """Newest first, at most ``limit`` rows. Callers reverse for display."""
    stmt = (
        select(Message)
        .where(Message.channel_id == channel_id)
        .order_by(desc(Message.created_at), desc(Message.id))
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def load_authors(
    session: AsyncSession, user_ids: Iterable[Optional[str]]
) -> dict[str, User]:
    """Batch load message authors keyed by id."""
    ids = {uid for uid in user_ids if uid}
    if not ids:
        return {}
    result = await session.execute(select(User).where(User.id.in_(ids)))
    return {user.id: user for user in result.scalars().all()}


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def channel_response(channel: Channel) -> ChannelResponse:
    return ChannelResponse(
        id=channel.id,
        name=channel.name,
        description=channel.description,
        is_private=channel.is_private,
    )


def message_payload(message: Message, author: Optional[User] = None) -> ChatMessagePayload:
    """The canonical message shape shared by broadcasts and history."""
    created_at = message.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    return ChatMessagePayload(
        id=message.id,
        channel_id=message.channel_id,
        user_id=message.user_id,
        content=message.content,
        created_at=created_at,
        author=AuthorInfo(
            id=author.id,
            display_name=author.display_name,
            profile_image_url=author.profile_image_url,
        ) if author else None,
    )
