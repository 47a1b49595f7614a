"""
Create the default chat channels (general, economics, announcements).

Does nothing when any channel already exists.
"""

import argparse
import asyncio

import structlog

from portal.core.config import get_settings
from portal.core.database import get_session_context, init_db
from portal.core.logging_config import configure_logging
from portal.services.chat import ensure_default_channels

log = structlog.get_logger()


async def seed(creator_id: str | None = None, create_tables: bool = False) -> int:
    if create_tables:
        await init_db()
    async with get_session_context() as session:
        created = await ensure_default_channels(session, creator_id=creator_id)
    for channel in created:
        print(f"Created channel #{channel.name} (id={channel.id})")
    if not created:
        print("Channels already exist, nothing to do.")
    return len(created)


def main() -> None:
    parser = argparse.ArgumentParser(description="Create the default chat channels.")
    parser.add_argument("--creator-id", default=None, help="User id recorded as the channels' creator")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables first (development only)",
    )
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level, "text")
    asyncio.run(seed(args.creator_id, args.create_tables))


if __name__ == "__main__":
    main()
