"""
Shared fixtures for the reconciliation tests.

Every test gets a fresh in-memory SQLite database with the real schema and
repositories. The payment gateway and the notifiers are mocked.
"""

from dataclasses import dataclass
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from ridepay.db import Database
from ridepay.models.bill import BillStatus, PaymentMethodKind
from ridepay.models.user import PendingPayment
from ridepay.repositories.activity_repository import ActivityRepository
from ridepay.repositories.bill_repository import BillRepository
from ridepay.repositories.listing_repository import ListingRepository
from ridepay.repositories.user_repository import UserRepository
from ridepay.services.activator import SubscriptionActivator
from ridepay.services.gateway import GatewayClient
from ridepay.services.notifications import AdminNotifier
from ridepay.services.reconciliation import ReconciliationEngine

FIXED_NOW = datetime(2026, 1, 1, 12, 0, 0)


@dataclass
class Store:
    db: Database
    bills: BillRepository
    users: UserRepository
    listings: ListingRepository
    activity: ActivityRepository


@pytest_asyncio.fixture
async def store():
    db = Database(":memory:")
    await db.connect()
    yield Store(
        db=db,
        bills=BillRepository(db),
        users=UserRepository(db),
        listings=ListingRepository(db),
        activity=ActivityRepository(db),
    )
    await db.close()


@pytest.fixture
def admin_notifier():
    notifier = MagicMock(spec=AdminNotifier)
    notifier.notify = AsyncMock()
    return notifier


@pytest.fixture
def send_confirmation():
    return AsyncMock()


@pytest.fixture
def activator(store, admin_notifier, send_confirmation):
    return SubscriptionActivator(
        store.db,
        store.bills,
        store.users,
        store.listings,
        store.activity,
        send_confirmation=send_confirmation,
        admin_notifier=admin_notifier,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def engine(store, activator, admin_notifier):
    return ReconciliationEngine(
        store.db,
        store.bills,
        store.users,
        activator,
        admin_notifier=admin_notifier,
    )


@pytest.fixture
def gateway():
    client = MagicMock(spec=GatewayClient)
    client.verify = AsyncMock(return_value=[])
    client.initiate = AsyncMock()
    return client


@pytest.fixture
def make_payment(store):
    """Create a user with listings, a bill and a matching pending payment."""

    async def _make(
        external_ref: str = "TX1",
        plan: str = "pro",
        status: BillStatus = BillStatus.INITIATED,
        amount: int = 10000,
        listings: int = 2,
        deleted_listings: int = 1,
        link_user: bool = True,
    ) -> int:
        user_id = await store.users.create_user(
            f"Owner {external_ref}", f"{external_ref.lower()}@example.com", "250788000000"
        )
        for index in range(listings):
            await store.listings.create_listing(user_id, f"Car {index}")
        for index in range(deleted_listings):
            await store.listings.create_listing(user_id, f"Old car {index}", is_deleted=True)
        await store.bills.create_bill(
            external_ref=external_ref,
            user_id=user_id,
            payer_phone="250788000000",
            amount=amount,
            currency="RWF",
            payment_method=PaymentMethodKind.MOBILE_MONEY,
        )
        if status is BillStatus.INITIATED:
            await store.bills.mark_initiated(external_ref, {"status": "success"})
        if link_user:
            await store.users.set_pending_payment(
                user_id,
                PendingPayment(external_ref=external_ref, amount=amount, plan=plan, payment_method="mobile_money"),
            )
        return user_id

    return _make
