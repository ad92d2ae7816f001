from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Callable

import aiosqlite

from ridepay.db import Connection, Database
from ridepay.errors import ActivationFailure
from ridepay.models.bill import Bill
from ridepay.models.listing import ListingBoost
from ridepay.models.user import User
from ridepay.repositories.activity_repository import ActivityRepository
from ridepay.repositories.bill_repository import BillRepository
from ridepay.repositories.listing_repository import ListingRepository
from ridepay.repositories.user_repository import UserRepository
from ridepay.services.notifications import AdminNotifier, ConfirmationSender

logger = logging.getLogger(__name__)


class SubscriptionActivator:
    def __init__(
        self,
        db: Database,
        bill_repo: BillRepository,
        user_repo: UserRepository,
        listing_repo: ListingRepository,
        activity_repo: ActivityRepository,
        subscription_days: int = 30,
        boost_days: int = 90,
        send_confirmation: ConfirmationSender | None = None,
        admin_notifier: AdminNotifier | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._db = db
        self._bills = bill_repo
        self._users = user_repo
        self._listings = listing_repo
        self._activity = activity_repo
        self._subscription_days = subscription_days
        self._boost_days = boost_days
        self._send_confirmation = send_confirmation
        self._admin_notifier = admin_notifier
        self._clock = clock

    async def apply(self, user: User, bill: Bill) -> bool:
        """
        Activate the plan the user was paying for with this bill.

        The bill's activation marker, the subscription and the listing boosts
        are written in one transaction. Returns False when another caller has
        already applied this bill. Raises ActivationFailure when the writes
        could not be committed; nothing is persisted in that case.
        """
        pending = user.subscription.pending_payment
        if pending is None or pending.external_ref != bill.external_ref:
            raise ActivationFailure(bill.external_ref, "user has no matching pending payment")
        plan = pending.plan
        previous_plan = user.subscription.plan
        now = self._clock()
        try:
            async with self._db.transaction() as tx:
                if not await self._bills.claim_activation(bill.external_ref, conn=tx):
                    logger.info("Activation already applied: tx_ref=%s", bill.external_ref)
                    return False
                listing_ids = await self._persist(
                    tx, user, plan, now, payment_method_id=bill.external_ref
                )
        except aiosqlite.Error as exc:
            logger.exception("Activation rolled back: tx_ref=%s user_id=%s", bill.external_ref, user.id)
            raise ActivationFailure(bill.external_ref, str(exc)) from exc
        logger.info(
            "Subscription activated: user_id=%s plan=%s tx_ref=%s listings=%s",
            user.id,
            plan,
            bill.external_ref,
            len(listing_ids),
        )
        await self._after_activation(user, plan, previous_plan, listing_ids, bill.amount)
        return True

    async def activate_free(self, user: User, plan: str) -> None:
        previous_plan = user.subscription.plan
        now = self._clock()
        try:
            async with self._db.transaction() as tx:
                listing_ids = await self._persist(tx, user, plan, now, payment_method_id=None)
        except aiosqlite.Error as exc:
            logger.exception("Free activation rolled back: user_id=%s", user.id)
            raise ActivationFailure(f"free:{user.id}", str(exc)) from exc
        await self._after_activation(user, plan, previous_plan, listing_ids, 0)

    async def _persist(
        self,
        tx: Connection,
        user: User,
        plan: str,
        now: datetime,
        payment_method_id: str | None,
    ) -> list[int]:
        updated = await self._users.activate_subscription(
            user.id,
            plan,
            start_date=now,
            end_date=now + timedelta(days=self._subscription_days),
            payment_method_id=payment_method_id,
            expected_pending_ref=payment_method_id,
            conn=tx,
        )
        if not updated:
            raise ActivationFailure(payment_method_id or f"free:{user.id}", "user record changed")
        boost = ListingBoost.for_plan(plan, now, now + timedelta(days=self._boost_days))
        return await self._listings.boost_owned(user.id, boost, conn=tx)

    async def _after_activation(
        self,
        user: User,
        plan: str,
        previous_plan: str,
        listing_ids: list[int],
        amount: int,
    ) -> None:
        try:
            for listing_id in listing_ids:
                await self._activity.log(
                    user.id,
                    "car_reactivated",
                    {"action": "reactivate_car", "target_id": listing_id},
                )
            await self._activity.log(
                user.id,
                "subscription_activated",
                {
                    "action": "activate_subscription",
                    "metadata": {"plan": plan, "previousPlan": previous_plan},
                },
            )
        except Exception:
            logger.exception("Activity log failed: user_id=%s", user.id)
        if self._send_confirmation:
            try:
                await self._send_confirmation(user, plan, amount)
            except Exception:
                logger.exception("Confirmation notification failed: user_id=%s", user.id)
        if self._admin_notifier:
            try:
                await self._admin_notifier.notify(
                    f"✅ Subscription activated: {user.email} → {plan} ({amount})"
                )
            except Exception:
                logger.exception("Admin notification failed: user_id=%s", user.id)
