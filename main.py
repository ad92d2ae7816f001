from __future__ import annotations

import asyncio
import logging

from aiogram import Bot

from ridepay.config import Settings
from ridepay.db import Database
from ridepay.repositories.activity_repository import ActivityRepository
from ridepay.repositories.bill_repository import BillRepository
from ridepay.repositories.listing_repository import ListingRepository
from ridepay.repositories.user_repository import UserRepository
from ridepay.services.activator import SubscriptionActivator
from ridepay.services.gateway import GatewayClient
from ridepay.services.log_context import RequestContextFilter
from ridepay.services.notifications import AdminNotifier, log_confirmation
from ridepay.services.payment_sweeper import PaymentSweeper, SweepScheduler
from ridepay.services.reconciliation import ReconciliationEngine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s [%(request_context)s]",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestContextFilter())


async def main() -> None:
    settings = Settings()
    db = Database(settings.database_path)
    await db.connect()

    bill_repo = BillRepository(db)
    user_repo = UserRepository(db)
    listing_repo = ListingRepository(db)
    activity_repo = ActivityRepository(db)

    bot = Bot(token=settings.telegram_token) if settings.telegram_token else None
    admin_notifier = AdminNotifier(bot, settings.telegram_admin_ids)

    gateway = GatewayClient(
        settings.flw_base_url,
        settings.flw_secret_key,
        settings.flw_encryption_key,
        timeout_seconds=settings.gateway_timeout_seconds,
        notify_admin=admin_notifier.notify,
    )
    activator = SubscriptionActivator(
        db,
        bill_repo,
        user_repo,
        listing_repo,
        activity_repo,
        subscription_days=settings.subscription_days,
        boost_days=settings.boost_days,
        send_confirmation=log_confirmation,
        admin_notifier=admin_notifier,
    )
    engine = ReconciliationEngine(db, bill_repo, user_repo, activator, admin_notifier=admin_notifier)
    sweeper = PaymentSweeper(bill_repo, gateway, engine, batch_size=settings.poll_batch_size)
    scheduler = SweepScheduler(sweeper, interval_seconds=settings.poll_interval_seconds)

    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await gateway.close()
        await admin_notifier.close()
        await db.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Payment reconciliation stopped")
