from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone

from sqlalchemy import select

# Ensure /app is in sys.path when executed in the container.
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from app.core.config import settings  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.db.session import SessionLocal  # noqa: E402
from app.models.user import ROLES, User  # noqa: E402
from app.services import fund_ledger  # noqa: E402

EMAIL_DOMAIN = "example.org"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Initialise les fonds (solde 0) et un utilisateur par rôle du circuit."
    )
    parser.add_argument("--domain", default=EMAIL_DOMAIN)
    parser.add_argument("--tokens", action="store_true", help="Affiche un jeton d'accès pour chaque utilisateur.")
    return parser


async def main() -> None:
    args = build_parser().parse_args()
    async with SessionLocal() as session:
        created = await fund_ledger.seed_funds(session, settings.currencies)
        for fund in created:
            print("created fund:", fund.devise)

        users: list[User] = []
        for role in ROLES:
            email = f"{role}@{args.domain}"
            result = await session.execute(select(User).where(User.email == email))
            user = result.scalar_one_or_none()
            if user is None:
                user = User(
                    email=email,
                    nom=role.capitalize(),
                    role=role,
                    active=True,
                    created_at=_utcnow(),
                    updated_at=_utcnow(),
                )
                session.add(user)
                print("created user:", email)
            users.append(user)
        await session.commit()

        if args.tokens:
            for user in users:
                token, _ = create_access_token(subject=str(user.id), role=user.role)
                print(f"{user.role}: {token}")


if __name__ == "__main__":
    asyncio.run(main())
