"""
Reconciliation of payment confirmations into bills.

Every confirmation path (provider callback, browser redirect, poll sweep,
manual lookup) ends in ``ReconciliationEngine.apply``. The bill row is the
only serialization point: a bill leaves pending/initiated through a single
conditional UPDATE, and only the caller whose UPDATE moved it to completed
runs the subscription activation.
"""

from __future__ import annotations

import logging
from typing import Any

from ridepay.db import Database
from ridepay.errors import ActivationFailure, BillNotFoundError, RaceLostError
from ridepay.models.bill import Bill, BillStatus, Outcome, Resolution
from ridepay.repositories.bill_repository import BillRepository
from ridepay.repositories.user_repository import UserRepository
from ridepay.services.activator import SubscriptionActivator
from ridepay.services.gateway import normalize_provider_status
from ridepay.services.notifications import AdminNotifier

logger = logging.getLogger(__name__)


def normalize_outcome(value: Any) -> Outcome:
    if isinstance(value, Outcome):
        return value
    if isinstance(value, str):
        try:
            return Outcome(value.strip().lower())
        except ValueError:
            return normalize_provider_status(value)
    return Outcome.AMBIGUOUS


class ReconciliationEngine:
    def __init__(
        self,
        db: Database,
        bill_repo: BillRepository,
        user_repo: UserRepository,
        activator: SubscriptionActivator,
        admin_notifier: AdminNotifier | None = None,
    ):
        self._db = db
        self._bills = bill_repo
        self._users = user_repo
        self._activator = activator
        self._admin_notifier = admin_notifier

    async def apply(
        self,
        external_ref: str,
        outcome: Outcome | str | None,
        snapshot: dict[str, Any] | None = None,
    ) -> Resolution:
        outcome = normalize_outcome(outcome)
        bill = await self._bills.get_by_ref(external_ref)
        if bill is None:
            raise BillNotFoundError(external_ref)
        if bill.is_terminal:
            logger.info(
                "Replay ignored: tx_ref=%s status=%s outcome=%s",
                external_ref,
                bill.status.value,
                outcome.value,
            )
            return Resolution(bill=bill)
        if outcome is Outcome.AMBIGUOUS:
            logger.info("Ambiguous outcome, bill left open: tx_ref=%s", external_ref)
            return Resolution(bill=bill)

        try:
            if outcome is Outcome.FAILURE:
                await self._resolve_failed(external_ref, snapshot)
            else:
                await self._bills.transition(external_ref, BillStatus.COMPLETED, snapshot)
        except RaceLostError:
            logger.info("Race lost, bill resolved concurrently: tx_ref=%s", external_ref)
            return Resolution(bill=await self._reload(external_ref))

        bill = await self._reload(external_ref)
        logger.info("Bill resolved: tx_ref=%s status=%s", external_ref, bill.status.value)
        if outcome is Outcome.FAILURE:
            return Resolution(bill=bill, transitioned=True)

        activated = await self._activate(bill)
        return Resolution(
            bill=await self._reload(external_ref) if activated else bill,
            activated=activated,
            transitioned=True,
        )

    async def resume_activation(self, external_ref: str) -> bool:
        bill = await self._bills.get_by_ref(external_ref)
        if bill is None:
            raise BillNotFoundError(external_ref)
        if bill.status is not BillStatus.COMPLETED or bill.activation_applied:
            return False
        return await self._activate(bill)

    async def resume_activations(self, limit: int = 10) -> int:
        activated = 0
        for bill in await self._bills.list_unactivated(limit):
            logger.info("Resuming activation: tx_ref=%s", bill.external_ref)
            if await self._activate(bill):
                activated += 1
        return activated

    async def _resolve_failed(self, external_ref: str, snapshot: dict[str, Any] | None) -> None:
        async with self._db.transaction() as tx:
            await self._bills.transition(external_ref, BillStatus.FAILED, snapshot, conn=tx)
            cleared = await self._users.clear_pending_payment(external_ref, conn=tx)
        if not cleared:
            logger.info("Failed bill had no pending subscription payment: tx_ref=%s", external_ref)

    async def _activate(self, bill: Bill) -> bool:
        user = await self._users.get_by_pending_ref(bill.external_ref)
        if user is None:
            await self._report_orphan(bill)
            return False
        try:
            return await self._activator.apply(user, bill)
        except ActivationFailure as exc:
            if await self._users.get_by_pending_ref(bill.external_ref) is None:
                logger.warning(
                    "Pending payment replaced during activation: tx_ref=%s reason=%s",
                    bill.external_ref,
                    exc.message,
                )
                await self._report_orphan(bill)
                return False
            logger.error("Activation deferred to next pass: tx_ref=%s reason=%s", bill.external_ref, exc.message)
            await self._alert(
                f"❗️ Payment {bill.external_ref} confirmed but activation failed; it will be retried."
            )
            return False

    async def _reload(self, external_ref: str) -> Bill:
        bill = await self._bills.get_by_ref(external_ref)
        if bill is None:
            raise BillNotFoundError(external_ref)
        return bill

    async def _report_orphan(self, bill: Bill) -> None:
        logger.warning(
            "Payment completed without a pending subscription, activation skipped: tx_ref=%s amount=%s",
            bill.external_ref,
            bill.amount,
        )
        await self._alert(
            f"⚠️ Payment {bill.external_ref} completed ({bill.amount} {bill.currency}) "
            "but no pending subscription matches it."
        )

    async def _alert(self, message: str) -> None:
        if not self._admin_notifier:
            return
        try:
            await self._admin_notifier.notify(message)
        except Exception:
            logger.exception("Admin alert failed")
