from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from uuid import uuid4

from ridepay.config import Settings
from ridepay.db import Database
from ridepay.errors import InvalidPaymentRequest, PaymentInitiationError, TransportError
from ridepay.models.bill import Outcome
from ridepay.models.user import PLANS, PendingPayment
from ridepay.repositories.bill_repository import BillRepository
from ridepay.repositories.user_repository import UserRepository
from ridepay.services.activator import SubscriptionActivator
from ridepay.services.gateway import ChargeRequest, GatewayClient
from ridepay.services.log_context import bind_request_context
from ridepay.services.payment_methods import PaymentMethod
from ridepay.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionCheckout:
    plan: str
    status: str
    external_ref: str | None = None
    amount: int = 0
    payment_link: str | None = None


class PaymentService:
    def __init__(
        self,
        settings: Settings,
        db: Database,
        bill_repo: BillRepository,
        user_repo: UserRepository,
        gateway: GatewayClient,
        engine: ReconciliationEngine,
        activator: SubscriptionActivator,
    ):
        self.settings = settings
        self._db = db
        self._bills = bill_repo
        self._users = user_repo
        self._gateway = gateway
        self._engine = engine
        self._activator = activator

    async def initiate_subscription(
        self,
        user_id: int,
        plan: str,
        method: PaymentMethod | None = None,
    ) -> SubscriptionCheckout:
        if plan not in PLANS:
            raise InvalidPaymentRequest("Invalid subscription plan")
        user = await self._users.get_by_id(user_id)
        if not user:
            raise InvalidPaymentRequest("User not found")

        amount = self.settings.plan_price(plan)
        if amount == 0:
            await self._activator.activate_free(user, plan)
            logger.info("Free plan activated: user_id=%s plan=%s", user.id, plan)
            return SubscriptionCheckout(plan=plan, status="active")

        if method is None:
            raise InvalidPaymentRequest(f"Payment method is required for the {plan} plan")
        method.validate()

        external_ref = self._unique_external_ref()
        previous = user.subscription.pending_payment
        if previous:
            logger.warning(
                "Replacing pending payment: user_id=%s old_ref=%s new_ref=%s",
                user.id,
                previous.external_ref,
                external_ref,
            )
        async with self._db.transaction() as tx:
            await self._bills.create_bill(
                external_ref=external_ref,
                user_id=user.id,
                payer_phone=method.payer_phone or user.phone,
                amount=amount,
                currency=self.settings.payment_currency,
                payment_method=method.kind,
                conn=tx,
            )
            await self._users.set_pending_payment(
                user.id,
                PendingPayment(
                    external_ref=external_ref,
                    amount=amount,
                    plan=plan,
                    payment_method=method.kind.value,
                ),
                conn=tx,
            )

        request = ChargeRequest(
            external_ref=external_ref,
            amount=amount,
            currency=self.settings.payment_currency,
            email=self.settings.payment_email,
            phone=method.payer_phone or user.phone,
            customer_name=user.name,
            redirect_url=self.settings.redirect_url,
        )
        with bind_request_context(tx_ref=external_ref, entry="initiate"):
            try:
                response = await self._gateway.initiate(request, method)
            except TransportError as exc:
                logger.warning("Charge outcome unknown, bill left pending: %s", exc.message)
                raise PaymentInitiationError(
                    "Payment provider unavailable; the payment will be verified automatically",
                    external_ref,
                ) from exc
            if not response.accepted:
                await self._engine.apply(external_ref, Outcome.FAILURE, snapshot=response.payload)
                raise PaymentInitiationError("Payment failed", external_ref)
            await self._bills.mark_initiated(external_ref, response.payload)

        logger.info(
            "Subscription payment initiated: user_id=%s plan=%s method=%s tx_ref=%s",
            user.id,
            plan,
            method.kind.value,
            external_ref,
        )
        return SubscriptionCheckout(
            plan=plan,
            status="initiated",
            external_ref=external_ref,
            amount=amount,
            payment_link=response.link,
        )

    def _unique_external_ref(self) -> str:
        return f"BILL-{int(time.time() * 1000)}-{uuid4().hex[:12]}"
