"""
Credit ledger.

Stateless facade over the ``users`` table. Decides whether a user may start a
paid operation, spends and refunds single credits, and pairs the two around an
arbitrary operation (``execute_with_rollback``).

Active subscribers bypass the balance entirely. A subscription whose expiry has
passed is downgraded the next time it is checked.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import select, update

from clipai.core.models import User, UserRecord
from clipai.core.normalizers import ensure_utc, utc_now
from clipai.core.transaction import (
    Operation,
    RowsAffected,
    SessionFactory,
    execute_with_transaction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

users = User.__table__

AUTHENTICATION_REQUIRED = "Authentication required"
USER_NOT_FOUND = "User not found"
INSUFFICIENT_CREDITS = "Insufficient credits"


class CreditError(Exception):
    def __init__(self, reason: str, status_code: int = 402):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


@dataclass(frozen=True)
class CreditCheckResult:
    can_proceed: bool
    user: Optional[UserRecord] = None
    reason: Optional[str] = None


class CreditLedger:
    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    def _load_user(self, user_id: int) -> Optional[UserRecord]:
        with self._session_factory() as db:
            row = (
                db.execute(
                    select(
                        users.c.id,
                        users.c.credits,
                        users.c.is_subscribed,
                        users.c.subscription_expires_at,
                    ).where(users.c.id == user_id)
                )
                .mappings()
                .first()
            )
        if row is None:
            return None
        return UserRecord.from_row(row)

    def _subscription_active(self, user: UserRecord) -> bool:
        if not user.is_subscribed:
            return False
        # No expiry recorded means an open-ended subscription.
        if user.subscription_expires_at is None:
            return True
        return user.subscription_expires_at > self._clock()

    def check_credits(self, user_id: Optional[int]) -> CreditCheckResult:
        if not user_id:
            return CreditCheckResult(can_proceed=False, reason=AUTHENTICATION_REQUIRED)

        user = self._load_user(user_id)
        if user is None:
            return CreditCheckResult(can_proceed=False, reason=USER_NOT_FOUND)

        if user.is_subscribed:
            if self._subscription_active(user):
                return CreditCheckResult(can_proceed=True, user=user)
            logger.info(
                "SUBSCRIPTION_EXPIRED user_id=%s expired_at=%s",
                user_id,
                user.subscription_expires_at,
            )
            self.update_subscription_status(user_id, False)
            user = replace(user, is_subscribed=False, subscription_expires_at=None)

        if user.credits <= 0:
            return CreditCheckResult(
                can_proceed=False, user=user, reason=INSUFFICIENT_CREDITS
            )
        return CreditCheckResult(can_proceed=True, user=user)

    def deduct_credits(self, user_id: int, user_info: Optional[UserRecord] = None) -> bool:
        """Spend one credit. Returns False when nothing was spent (active subscriber)."""
        user = user_info
        if user is None:
            check = self.check_credits(user_id)
            if not check.can_proceed:
                raise CreditError(check.reason or "Cannot deduct credits")
            user = check.user

        if user is not None and user.is_subscribed:
            logger.info("CREDIT_SKIPPED user_id=%s reason=subscribed", user_id)
            return False

        # Guarded on the stored balance so concurrent spends cannot go negative.
        result = execute_with_transaction(
            self._session_factory,
            Operation.write(
                update(users)
                .where(users.c.id == user_id, users.c.credits > 0)
                .values(credits=users.c.credits - 1)
            ),
        )
        if not isinstance(result, RowsAffected) or result.count == 0:
            logger.warning("CREDIT_DEDUCT_REFUSED user_id=%s", user_id)
            raise CreditError(INSUFFICIENT_CREDITS)

        logger.info("CREDIT_DEDUCTED user_id=%s", user_id)
        return True

    def refund_credits(self, user_id: int, deducted: bool = False) -> None:
        """Give one credit back. Never raises.

        With ``deducted`` set the caller has already spent a credit for this user,
        so a subscription that started in the meantime does not cancel the refund.
        """
        try:
            user = self.get_user_credits(user_id)
            if user is None:
                logger.warning("CREDIT_REFUND_SKIPPED user_id=%s reason=user_not_found", user_id)
                return
            if user.is_subscribed and not deducted:
                logger.info("CREDIT_REFUND_SKIPPED user_id=%s reason=subscribed", user_id)
                return

            execute_with_transaction(
                self._session_factory,
                Operation.write(
                    update(users)
                    .where(users.c.id == user_id)
                    .values(credits=users.c.credits + 1)
                ),
            )
            logger.info("CREDIT_REFUNDED user_id=%s", user_id)
        except Exception:
            logger.exception("CREDIT_REFUND_FAILED user_id=%s", user_id)

    def execute_with_rollback(self, user_id: int, operation: Callable[[], T]) -> T:
        deducted = self.deduct_credits(user_id)
        try:
            return operation()
        except Exception:
            if deducted:
                logger.info(
                    "Operation failed, rolling back credit deduction for user %s", user_id
                )
                self.refund_credits(user_id, deducted=True)
            raise

    def add_credits(self, user_id: int, amount: int) -> None:
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        result = execute_with_transaction(
            self._session_factory,
            Operation.write(
                update(users)
                .where(users.c.id == user_id)
                .values(credits=users.c.credits + amount)
            ),
        )
        if not isinstance(result, RowsAffected) or result.count == 0:
            raise CreditError(USER_NOT_FOUND, status_code=404)
        logger.info("CREDIT_ADDED user_id=%s amount=%s", user_id, amount)

    def update_subscription_status(
        self,
        user_id: int,
        is_subscribed: bool,
        expires_at: Optional[datetime] = None,
    ) -> None:
        execute_with_transaction(
            self._session_factory,
            Operation.write(
                update(users)
                .where(users.c.id == user_id)
                .values(
                    is_subscribed=is_subscribed,
                    subscription_expires_at=ensure_utc(expires_at),
                )
            ),
        )
        logger.info(
            "SUBSCRIPTION_UPDATED user_id=%s is_subscribed=%s expires_at=%s",
            user_id,
            is_subscribed,
            expires_at,
        )

    def get_user_credits(self, user_id: int) -> Optional[UserRecord]:
        return self.check_credits(user_id).user
