############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# ledger.py: Credit ledger with append-only transaction audit
#
############################################################

"""Credit ledger.

The account row caches the balance; every change to it is paired with an
append-only transaction row in the same database transaction, so the
balance always equals the sum of the user's transaction amounts.
"""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.ledger.pricing import calculate_credits
from backend.app.db import credit_crud
from backend.app.db.models import CreditAccount, CreditTransaction, TransactionType
from backend.app.logging_config import get_logger
from backend.app.settings import Settings

logger = get_logger(__name__)


@dataclass
class CreditBalance:
    balance: int
    total_purchased: int
    total_used: int

    @classmethod
    def from_account(cls, account: CreditAccount) -> "CreditBalance":
        return cls(
            balance=account.balance,
            total_purchased=account.total_purchased,
            total_used=account.total_used,
        )


@dataclass
class DebitResult:
    success: bool
    new_balance: int


@dataclass
class CreditResult:
    new_balance: int


@dataclass
class UsageCommit:
    """Outcome of committing one exchange's usage."""

    success: bool
    credits_used: int
    new_balance: int
    usage_log_id: Optional[int] = None


class CreditLedger:
    """Check, debit and credit user balances."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    def price(self, input_tokens: int, output_tokens: int) -> int:
        """Credits for the given token counts at the configured rates."""
        return calculate_credits(
            input_tokens,
            output_tokens,
            self.settings.credits_per_1k_input_tokens,
            self.settings.credits_per_1k_output_tokens,
        )

    async def _ensure_account(self, user_id: str) -> CreditAccount:
        """Load the account, creating an empty one on first use."""
        async with self.session_factory() as db:
            account = await credit_crud.get_account(db, user_id)
            if account is not None:
                return account
            try:
                account = await credit_crud.create_account(db, user_id)
                await db.commit()
                return account
            except IntegrityError:
                await db.rollback()
                account = await credit_crud.get_account(db, user_id)
                if account is None:
                    raise
                return account

    async def get_balance(self, user_id: str) -> CreditBalance:
        account = await self._ensure_account(user_id)
        return CreditBalance.from_account(account)

    async def has_enough(self, user_id: str, required: int = 1) -> bool:
        """True if the balance covers ``required`` credits."""
        balance = await self.get_balance(user_id)
        return balance.balance >= required

    async def debit(
        self, user_id: str, amount: int, description: Optional[str] = None
    ) -> DebitResult:
        """
        Take ``amount`` credits, failing closed.

        Raises:
            ValueError: if amount is not positive
        """
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        await self._ensure_account(user_id)

        async with self.session_factory() as db:
            if not await credit_crud.debit_account(db, user_id, amount):
                await db.rollback()
                account = await credit_crud.get_account(db, user_id)
                logger.info(
                    "debit_refused",
                    user_id=user_id,
                    amount=amount,
                    balance=account.balance if account else 0,
                )
                return DebitResult(success=False, new_balance=account.balance if account else 0)
            await credit_crud.add_transaction(
                db, user_id, -amount, TransactionType.USAGE, description
            )
            account = await credit_crud.get_account(db, user_id)
            await db.commit()

        return DebitResult(success=True, new_balance=account.balance)

    async def credit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType = TransactionType.PURCHASE,
        description: Optional[str] = None,
    ) -> CreditResult:
        """
        Add credits; purchases also count towards total_purchased.

        Raises:
            ValueError: if amount is not positive or type is usage
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        if type == TransactionType.USAGE:
            raise ValueError("Usage transactions are debits")
        await self._ensure_account(user_id)

        async with self.session_factory() as db:
            await credit_crud.credit_account(
                db, user_id, amount, purchased=type == TransactionType.PURCHASE
            )
            await credit_crud.add_transaction(db, user_id, amount, type, description)
            account = await credit_crud.get_account(db, user_id)
            await db.commit()

        logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            type=type.value,
            balance=account.balance,
        )
        return CreditResult(new_balance=account.balance)

    async def commit_usage(
        self,
        user_id: str,
        message_id: Optional[int],
        input_tokens: int,
        output_tokens: int,
        model: str,
    ) -> UsageCommit:
        """
        Record an exchange's usage and charge for it in one transaction.

        Nothing is written when the balance no longer covers the charge.
        """
        credits = self.price(input_tokens, output_tokens)
        await self._ensure_account(user_id)

        async with self.session_factory() as db:
            if credits > 0 and not await credit_crud.debit_account(db, user_id, credits):
                await db.rollback()
                account = await credit_crud.get_account(db, user_id)
                logger.warning(
                    "usage_debit_refused",
                    user_id=user_id,
                    message_id=message_id,
                    credits=credits,
                    balance=account.balance if account else 0,
                )
                return UsageCommit(
                    success=False,
                    credits_used=0,
                    new_balance=account.balance if account else 0,
                )

            entry = await credit_crud.create_usage_log(
                db, user_id, message_id, input_tokens, output_tokens, credits, model
            )
            if credits > 0:
                await credit_crud.add_transaction(
                    db,
                    user_id,
                    -credits,
                    TransactionType.USAGE,
                    f"Message: {input_tokens} in / {output_tokens} out tokens",
                )
            account = await credit_crud.get_account(db, user_id)
            await db.commit()

        return UsageCommit(
            success=True,
            credits_used=credits,
            new_balance=account.balance,
            usage_log_id=entry.id,
        )

    async def history(self, user_id: str, limit: int = 50) -> List[CreditTransaction]:
        """Newest-first transaction history."""
        async with self.session_factory() as db:
            return await credit_crud.get_transactions(db, user_id, limit=limit)

    async def usage_stats(self, user_id: str, days: int = 30) -> dict:
        async with self.session_factory() as db:
            return await credit_crud.get_usage_totals(db, user_id, days=days)

    async def transaction_total(self, user_id: str) -> int:
        """Sum of all transaction amounts; equal to the balance."""
        async with self.session_factory() as db:
            return await credit_crud.sum_transactions(db, user_id)
