from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
import logging

from ridepay.errors import BillNotFoundError, TransportError
from ridepay.repositories.bill_repository import BillRepository
from ridepay.services.gateway import GatewayClient
from ridepay.services.log_context import bind_request_context
from ridepay.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    selected: int = 0
    answered: int = 0
    resolved: int = 0
    activated: int = 0
    missing: int = 0
    resumed: int = 0
    transport_error: bool = False


class PaymentSweeper:
    def __init__(
        self,
        bill_repo: BillRepository,
        gateway: GatewayClient,
        engine: ReconciliationEngine,
        batch_size: int = 10,
    ):
        self._bills = bill_repo
        self._gateway = gateway
        self._engine = engine
        self._batch_size = batch_size

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        bills = await self._bills.list_unresolved(self._batch_size)
        report.selected = len(bills)
        if bills:
            refs = [bill.external_ref for bill in bills]
            try:
                await self._reconcile(refs, report)
            finally:
                await self._bills.touch_checked(refs)
        report.resumed = await self._engine.resume_activations(self._batch_size)
        logger.info(
            "Payment sweep: selected=%s answered=%s resolved=%s activated=%s missing=%s resumed=%s",
            report.selected,
            report.answered,
            report.resolved,
            report.activated,
            report.missing,
            report.resumed,
        )
        return report

    async def _reconcile(self, refs: list[str], report: SweepReport) -> None:
        try:
            results = await self._gateway.verify(refs)
        except TransportError as exc:
            logger.warning("Payment sweep skipped, provider unavailable: %s", exc.message)
            report.transport_error = True
            return
        selected = set(refs)
        by_ref = {item.external_ref: item for item in results if item.external_ref in selected}
        report.answered = len(by_ref)
        report.missing = len(refs) - len(by_ref)
        for external_ref in refs:
            result = by_ref.get(external_ref)
            if result is None:
                continue
            with bind_request_context(tx_ref=external_ref, entry="poll"):
                try:
                    resolution = await self._engine.apply(
                        external_ref, result.outcome, snapshot=result.raw_payload
                    )
                except BillNotFoundError:
                    logger.warning("Bill disappeared during sweep: tx_ref=%s", external_ref)
                    continue
            if resolution.transitioned:
                report.resolved += 1
            if resolution.activated:
                report.activated += 1


class SweepScheduler:
    """
    Runs the sweeper on a fixed interval. At most one sweep runs at a time;
    a tick or manual trigger that arrives while a sweep is running is skipped.
    """

    def __init__(self, sweeper: PaymentSweeper, interval_seconds: int = 120):
        self._sweeper = sweeper
        self._interval_seconds = interval_seconds
        self._slot = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="payment-sweeper")
        logger.info("Payment sweeper started: interval=%ss", self._interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Payment sweeper stopped")

    async def run_once(self) -> SweepReport | None:
        if self._slot.locked():
            logger.info("Payment sweep already running, tick skipped")
            return None
        async with self._slot:
            return await self._sweeper.sweep()

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Payment sweep failed")
            await asyncio.sleep(self._interval_seconds)
