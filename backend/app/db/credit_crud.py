############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# credit_crud.py: Database CRUD operations for the credit ledger
#
############################################################

"""Database CRUD operations for credit accounts, transactions and usage logs."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.models import (
    CreditAccount,
    CreditTransaction,
    TransactionType,
    UsageLog,
)


# Accounts
async def get_account(db: AsyncSession, user_id: str) -> Optional[CreditAccount]:
    """Get a user's credit account."""
    result = await db.execute(
        select(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_account(db: AsyncSession, user_id: str) -> CreditAccount:
    """Create a zero-balance account. Raises IntegrityError if one exists."""
    account = CreditAccount(user_id=user_id, balance=0, total_purchased=0, total_used=0)
    db.add(account)
    await db.flush()
    return account


async def debit_account(db: AsyncSession, user_id: str, amount: int) -> bool:
    """Conditionally take ``amount`` credits.

    Single UPDATE guarded by ``balance >= amount`` so concurrent debits can
    never drive the balance negative. Returns False when nothing was taken.
    """
    result = await db.execute(
        update(CreditAccount)
        .where(
            and_(
                CreditAccount.user_id == user_id,
                CreditAccount.balance >= amount,
            )
        )
        .values(
            balance=CreditAccount.balance - amount,
            total_used=CreditAccount.total_used + amount,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def credit_account(
    db: AsyncSession, user_id: str, amount: int, purchased: bool
) -> bool:
    """Add credits; ``purchased`` also bumps total_purchased."""
    values = {"balance": CreditAccount.balance + amount}
    if purchased:
        values["total_purchased"] = CreditAccount.total_purchased + amount
    result = await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# Transactions
async def add_transaction(
    db: AsyncSession,
    user_id: str,
    amount: int,
    type: TransactionType,
    description: Optional[str] = None,
) -> CreditTransaction:
    """Append an audit row."""
    txn = CreditTransaction(user_id=user_id, amount=amount, type=type, description=description)
    db.add(txn)
    await db.flush()
    return txn


async def get_transactions(
    db: AsyncSession, user_id: str, limit: int = 50
) -> List[CreditTransaction]:
    """Newest-first transaction history."""
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def sum_transactions(db: AsyncSession, user_id: str) -> int:
    """Sum of all transaction amounts; equals the account balance."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0))
        .where(CreditTransaction.user_id == user_id)
    )
    return int(result.scalar_one())


# Usage logs
async def create_usage_log(
    db: AsyncSession,
    user_id: str,
    message_id: Optional[int],
    input_tokens: int,
    output_tokens: int,
    credits_used: int,
    model: str,
) -> UsageLog:
    """Record usage for one assistant turn."""
    entry = UsageLog(
        user_id=user_id,
        message_id=message_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        credits_used=credits_used,
        model=model,
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_usage_totals(db: AsyncSession, user_id: str, days: int = 30) -> dict:
    """Token/credit sums and turn count over the last ``days`` days."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    result = await db.execute(
        select(
            func.coalesce(func.sum(UsageLog.input_tokens), 0),
            func.coalesce(func.sum(UsageLog.output_tokens), 0),
            func.coalesce(func.sum(UsageLog.credits_used), 0),
            func.count(UsageLog.id),
        ).where(
            and_(
                UsageLog.user_id == user_id,
                UsageLog.created_at >= cutoff,
            )
        )
    )
    input_tokens, output_tokens, credits_used, count = result.one()
    return {
        "total_input_tokens": int(input_tokens),
        "total_output_tokens": int(output_tokens),
        "total_credits_used": int(credits_used),
        "message_count": int(count),
    }
