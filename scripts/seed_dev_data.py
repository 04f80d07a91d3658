#!/usr/bin/env python3
############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# seed_dev_data.py: Seed database with development test data
#
############################################################

"""Seed development data for SandboxRelay."""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.core.ledger import CreditLedger
from backend.app.db import crud
from backend.app.db.models import TransactionType
from backend.app.db.session import AsyncSessionLocal, engine
from backend.app.security import issue_session_token
from backend.app.settings import get_settings

DEV_USERS = {
    "dev-alice": 1000,
    "dev-bob": 50,
    "dev-broke": 0,
}

DEV_MEMORIES = {
    "dev-alice": {"timezone": "America/Los_Angeles", "name": "Alice"},
}


async def seed_credits(ledger: CreditLedger):
    for user_id, amount in DEV_USERS.items():
        balance = await ledger.get_balance(user_id)
        if balance.balance >= amount:
            print(f"  {user_id} already has {balance.balance} credits, skipping...")
            continue
        result = await ledger.credit(
            user_id, amount - balance.balance, TransactionType.BONUS, "Development seed"
        )
        print(f"  {user_id}: balance {result.new_balance}")


async def seed_memories():
    async with AsyncSessionLocal() as db:
        for user_id, memories in DEV_MEMORIES.items():
            for key, value in memories.items():
                await crud.upsert_memory(db, user_id, key, value)
                print(f"  {user_id}: memory {key}")
        await db.commit()


async def main():
    settings = get_settings()
    print(f"Seeding {settings.app_name} development data...")

    ledger = CreditLedger(AsyncSessionLocal, settings)

    print("Credits:")
    await seed_credits(ledger)

    print("Memories:")
    await seed_memories()

    print("\nSession tokens:")
    for user_id in DEV_USERS:
        print(f"  {user_id}: {issue_session_token(user_id)}")

    await engine.dispose()
    print("\nDone.")


if __name__ == "__main__":
    asyncio.run(main())
