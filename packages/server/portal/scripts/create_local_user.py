"""
Create (or update) a local user and print a session token for it.

The portal's identity service owns users in production; this is for local
development and manual testing of the chat endpoints.
"""

import argparse
import asyncio
import uuid

from sqlmodel import select

from portal.core.auth import create_jwt
from portal.core.database import get_session_context, init_db
from portal.models.user import User


async def create_user(
    email: str,
    first_name: str = "",
    last_name: str = "",
    admin: bool = False,
    create_tables: bool = False,
) -> tuple[User, str]:
    if create_tables:
        await init_db()

    async with get_session_context() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user:
            user = User(
                id=uuid.uuid4().hex,
                email=email,
                first_name=first_name,
                last_name=last_name,
            )
            print(f"Created user: {email}")
        else:
            print(f"User {email} already exists.")

        if admin:
            user.is_admin = True
            user.admin_level = max(user.admin_level, 1)
        session.add(user)

    token, _ = create_jwt(user.id)
    return user, token


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a local chat user.")
    parser.add_argument("--email", required=True, help="Email address for the user")
    parser.add_argument("--first-name", default="")
    parser.add_argument("--last-name", default="")
    parser.add_argument("--admin", action="store_true", help="Grant channel administration")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    args = parser.parse_args()

    user, token = asyncio.run(
        create_user(args.email, args.first_name, args.last_name, args.admin, args.create_tables)
    )
    print(f"User id: {user.id}")
    print(f"Session token: {token}")


if __name__ == "__main__":
    main()
