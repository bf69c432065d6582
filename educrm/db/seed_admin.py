"""
Seed script: create the tables, one organization and its first superadmin.

Run once with env set:
  SEED_ADMIN_EMAIL=admin@yourcenter.uz
  SEED_ADMIN_PASSWORD=YourSecurePassword

  python -m educrm.db.seed_admin "My Learning Center"
"""
import argparse
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from educrm.auth.models import User
from educrm.auth.security import hash_password
from educrm.core.config import settings
from educrm.core.enums import UserRole
from educrm.core.logging import setup_logging
from educrm.core.models import Organization
from educrm.db.session import AsyncSessionLocal, engine, init_models

logger = logging.getLogger("educrm.seed")

DEFAULT_ADMIN_FULL_NAME = "Super Admin"


async def seed_admin(db: AsyncSession, organization_name: str) -> None:
    # 1. Ensure organization exists
    result = await db.execute(select(Organization).where(Organization.name == organization_name))
    organization = result.scalar_one_or_none()
    if not organization:
        organization = Organization(name=organization_name)
        db.add(organization)
        await db.flush()
        logger.info("Created organization %s", organization_name)
    else:
        logger.info("Organization %s already exists", organization_name)

    email = settings.seed_admin_email
    password = settings.seed_admin_password
    if not email or not password:
        await db.commit()
        logger.warning("SEED_ADMIN_EMAIL / SEED_ADMIN_PASSWORD not set; skipping admin user")
        return

    # 2. Create or update the superadmin
    user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if not user:
        db.add(
            User(
                organization_id=organization.id,
                full_name=DEFAULT_ADMIN_FULL_NAME,
                email=email,
                password_hash=hash_password(password),
                role=UserRole.SUPERADMIN.value,
                status="ACTIVE",
            )
        )
        logger.info("Created superadmin %s", email)
    else:
        user.password_hash = hash_password(password)
        user.role = UserRole.SUPERADMIN.value
        logger.info("Updated superadmin %s", email)
    await db.commit()


async def main(organization_name: str) -> None:
    await init_models()
    async with AsyncSessionLocal() as db:
        await seed_admin(db, organization_name)
    await engine.dispose()


if __name__ == "__main__":
    setup_logging(settings.log_level, settings.log_format)
    parser = argparse.ArgumentParser(description="Create an organization and its superadmin")
    parser.add_argument("organization_name", nargs="?", default="Main Center")
    args = parser.parse_args()
    asyncio.run(main(args.organization_name))
