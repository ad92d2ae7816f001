from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from ridepay.models.user import User

logger = logging.getLogger(__name__)

ConfirmationSender = Callable[[User, str, int], Awaitable[None]]


class AdminNotifier:
    """Best-effort operator alerts over the Telegram Bot API."""

    def __init__(self, bot: Bot | None, admin_ids: Iterable[int]):
        self._bot = bot
        self._admin_ids = list(admin_ids)

    async def notify(self, message: str) -> None:
        if not self._bot or not self._admin_ids:
            logger.info("Admin alert (no bot configured): %s", message)
            return
        for admin_id in self._admin_ids:
            try:
                await self._bot.send_message(admin_id, message)
            except TelegramAPIError as exc:
                logger.warning("Admin alert skipped: admin_id=%s error=%s", admin_id, exc)

    async def close(self) -> None:
        if self._bot:
            await self._bot.session.close()


async def log_confirmation(user: User, plan: str, amount: int) -> None:
    """Default confirmation sender: records the receipt until a user-facing channel is wired."""
    logger.info(
        "Payment confirmation: user_id=%s email=%s plan=%s amount=%s",
        user.id,
        user.email,
        plan,
        amount,
    )
