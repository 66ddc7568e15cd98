"""
Crear (o reactivar) un operador de la consola interna.

Run inside the API container to use 'postgres' host and project PYTHONPATH:
    docker compose exec api python scripts/create_internal_user.py \
        --email ops@example.com --name "Ops" --role superadmin --password 'S3cret!'

Si el correo ya existe se actualizan nombre, rol y contraseña.
"""

# Add project root (/code) to sys.path so `app.*` imports work even if CWD changes
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse
import asyncio
import getpass

from sqlalchemy import select

from app.database.database import AsyncSessionLocal, create_tables
from app.modules.internal_admin.models import InternalUser, InternalRole, ALL_INTERNAL_ROLES
from app.modules.internal_admin.utils import hash_password


async def create_internal_user(email: str, name: str, role: str, password: str, create_schema: bool = False) -> None:
    if create_schema:
        await create_tables()

    async with AsyncSessionLocal() as db:
        result = await db.execute(select(InternalUser).where(InternalUser.email == email))
        user = result.scalar_one_or_none()

        if user:
            print(f"Updating existing internal user {email}")
        else:
            print(f"Creating internal user {email}")
            user = InternalUser(email=email)
            db.add(user)

        user.name = name
        user.role = role
        user.password_hash = hash_password(password)
        user.is_active = True
        await db.commit()

    print(f"OK: {email} ({role})")


def main():
    parser = argparse.ArgumentParser(description="Create an internal admin operator")
    parser.add_argument("--email", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--role", choices=ALL_INTERNAL_ROLES, default=InternalRole.SUPPORT_AGENT.value)
    parser.add_argument("--password", help="If omitted, it is read from the terminal")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first (development)")
    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")
    if not password:
        parser.error("password is required")

    asyncio.run(create_internal_user(args.email.lower(), args.name, args.role, password, args.create_tables))


if __name__ == "__main__":
    main()
