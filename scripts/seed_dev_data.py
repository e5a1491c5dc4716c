#!/usr/bin/env python3
"""Seed a development agent for knowledge uploads.

Run from the repository root with: python -m scripts.seed_dev_data
Uploads sent with the X-Dev-Bypass header can then pass agentId=DEV_AGENT_ID.
"""

import asyncio

from sqlalchemy import select

from src.auth.middleware import DEV_TENANT_ID
from src.db.database import async_session_maker, close_db
from src.db.models import Agent

DEV_AGENT_ID = "00000000-0000-0000-0000-0000000000a1"


async def seed_dev_data():
    """Create the dev agent in the dev tenant if it is missing."""

    async with async_session_maker() as db:
        result = await db.execute(select(Agent).where(Agent.id == DEV_AGENT_ID))
        if result.scalar_one_or_none():
            print("✓ Dev agent already exists")
        else:
            db.add(
                Agent(
                    id=DEV_AGENT_ID,
                    tenant_id=DEV_TENANT_ID,
                    name="Development Agent",
                    is_active=True,
                )
            )
            await db.commit()
            print("✓ Created dev agent")

        print(f"  - Tenant ID: {DEV_TENANT_ID}")
        print(f"  - Agent ID:  {DEV_AGENT_ID}")

    await close_db()


if __name__ == "__main__":
    asyncio.run(seed_dev_data())
