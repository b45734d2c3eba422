"""Two-bucket credit ledger.

All methods take an open connection so callers can put ledger changes in the
same transaction as the job rows they pay for. Every mutation locks the
profile row first.
"""

import logging
from typing import Optional
from uuid import UUID

import asyncpg

from studio_jobs.errors import InsufficientCreditsError, ProfileNotFoundError
from studio_jobs.models import CreditBucket, CreditSplit, JobStatus, Profile


def split_deduction(
    subscription_credits: int, purchased_credits: int, amount: int, user_id: str = None
) -> CreditSplit:
    """Take subscription credits first, then purchased credits for the rest."""
    if amount < 0:
        raise ValueError("amount must not be negative")
    available = subscription_credits + purchased_credits
    if available < amount:
        raise InsufficientCreditsError(user_id, required=amount, available=available)
    from_subscription = min(subscription_credits, amount)
    from_purchased = min(purchased_credits, amount - from_subscription)
    return CreditSplit(subscription=from_subscription, purchased=from_purchased)


class CreditLedger:
    """Deduction, refund and grants against the ``profiles`` table."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    async def get_profile(
        self, conn: asyncpg.Connection, user_id: str, for_update: bool = False
    ) -> Profile:
        query = "SELECT * FROM profiles WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await conn.fetchrow(query, user_id)
        if not row:
            raise ProfileNotFoundError(user_id)
        return _row_to_profile(row)

    async def deduct(
        self, conn: asyncpg.Connection, user_id: str, amount: int
    ) -> CreditSplit:
        """Charge ``amount``. Raises InsufficientCreditsError without writing."""
        if amount == 0:
            await self.get_profile(conn, user_id)
            return CreditSplit()

        profile = await self.get_profile(conn, user_id, for_update=True)
        split = split_deduction(
            profile.subscription_credits,
            profile.purchased_credits,
            amount,
            user_id=user_id,
        )

        await conn.execute(
            """
            UPDATE profiles
            SET subscription_credits = subscription_credits - $1,
                purchased_credits = purchased_credits - $2,
                updated_at = now()
            WHERE id = $3
            """,
            split.subscription,
            split.purchased,
            user_id,
        )
        self.logger.info(
            f"Deducted {amount} credits from {user_id} "
            f"(subscription={split.subscription}, purchased={split.purchased})"
        )
        return split

    async def record_transaction(
        self,
        conn: asyncpg.Connection,
        *,
        user_id: str,
        type: str,
        split: CreditSplit,
        job_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> None:
        await conn.execute(
            """
            INSERT INTO credit_transactions (
                user_id, job_id, type, subscription_amount, purchased_amount, description
            ) VALUES ($1, $2, $3, $4, $5, $6)
            """,
            user_id,
            job_id,
            type,
            split.subscription,
            split.purchased,
            description,
        )

    async def refund(
        self, conn: asyncpg.Connection, job_id: UUID
    ) -> Optional[CreditSplit]:
        """Return a failed job's exact deduction split.

        Returns None when there is nothing to refund: the job is not failed,
        was free, or has already been refunded.
        """
        job = await conn.fetchrow(
            """
            SELECT user_id, status, cost_amount, is_refunded,
                   subscription_deducted, purchased_deducted
            FROM generation_jobs
            WHERE id = $1
            FOR UPDATE
            """,
            job_id,
        )
        if not job:
            return None
        if (
            job["status"] != JobStatus.FAILED.value
            or job["is_refunded"]
            or job["cost_amount"] <= 0
        ):
            return None

        split = CreditSplit(
            subscription=job["subscription_deducted"],
            purchased=job["purchased_deducted"],
        )

        await self.get_profile(conn, job["user_id"], for_update=True)
        await conn.execute(
            """
            UPDATE profiles
            SET subscription_credits = subscription_credits + $1,
                purchased_credits = purchased_credits + $2,
                updated_at = now()
            WHERE id = $3
            """,
            split.subscription,
            split.purchased,
            job["user_id"],
        )
        await conn.execute(
            """
            UPDATE generation_jobs
            SET is_refunded = true, updated_at = now()
            WHERE id = $1
            """,
            job_id,
        )
        await self.record_transaction(
            conn,
            user_id=job["user_id"],
            type="refund",
            split=split,
            job_id=job_id,
            description="Refund for failed job",
        )
        self.logger.info(
            f"Refunded job {job_id} to {job['user_id']} "
            f"(subscription={split.subscription}, purchased={split.purchased})"
        )
        return split

    async def add_credits(
        self,
        conn: asyncpg.Connection,
        user_id: str,
        amount: int,
        bucket: CreditBucket,
        description: Optional[str] = None,
    ) -> Profile:
        """Grant credits to one bucket, e.g. after a purchase."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        bucket = CreditBucket(bucket)
        column = (
            "subscription_credits"
            if bucket is CreditBucket.SUBSCRIPTION
            else "purchased_credits"
        )

        await self.get_profile(conn, user_id, for_update=True)
        row = await conn.fetchrow(
            f"""
            UPDATE profiles
            SET {column} = {column} + $1, updated_at = now()
            WHERE id = $2
            RETURNING *
            """,
            amount,
            user_id,
        )
        split = (
            CreditSplit(subscription=amount)
            if bucket is CreditBucket.SUBSCRIPTION
            else CreditSplit(purchased=amount)
        )
        await self.record_transaction(
            conn, user_id=user_id, type="grant", split=split, description=description
        )
        return _row_to_profile(row)

    async def create_profile(
        self,
        conn: asyncpg.Connection,
        user_id: str,
        email: Optional[str],
        signup_bonus: int,
    ) -> Optional[Profile]:
        """Create a profile carrying the signup bonus.

        Returns None if the profile already existed, in which case no bonus is
        granted.
        """
        row = await conn.fetchrow(
            """
            INSERT INTO profiles (id, email, purchased_credits)
            VALUES ($1, $2, $3)
            ON CONFLICT (id) DO NOTHING
            RETURNING *
            """,
            user_id,
            email,
            signup_bonus,
        )
        if not row:
            return None
        if signup_bonus > 0:
            await self.record_transaction(
                conn,
                user_id=user_id,
                type="grant",
                split=CreditSplit(purchased=signup_bonus),
                description="Signup bonus",
            )
        return _row_to_profile(row)

    async def grant_subscription(
        self,
        conn: asyncpg.Connection,
        user_id: str,
        credits: int,
        first_subscription_bonus: int = 0,
    ) -> Profile:
        """Add a subscription period's credits, plus the one-time first bonus."""
        profile = await self.get_profile(conn, user_id, for_update=True)
        amount = credits
        if not profile.has_first_subscription:
            amount += first_subscription_bonus

        row = await conn.fetchrow(
            """
            UPDATE profiles
            SET subscription_credits = subscription_credits + $1,
                has_first_subscription = true,
                updated_at = now()
            WHERE id = $2
            RETURNING *
            """,
            amount,
            user_id,
        )
        await self.record_transaction(
            conn,
            user_id=user_id,
            type="grant",
            split=CreditSplit(subscription=amount),
            description="Subscription credits",
        )
        return _row_to_profile(row)


def _row_to_profile(row: asyncpg.Record) -> Profile:
    return Profile(
        id=row["id"],
        email=row["email"],
        subscription_credits=row["subscription_credits"],
        purchased_credits=row["purchased_credits"],
        has_first_subscription=row["has_first_subscription"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
