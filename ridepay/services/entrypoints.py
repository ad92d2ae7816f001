from __future__ import annotations

from dataclasses import dataclass
import hmac
import logging
from typing import Any

from ridepay.errors import BillNotFoundError, PayloadValidationError, TransportError
from ridepay.models.bill import BillStatus, Outcome, Resolution
from ridepay.repositories.bill_repository import BillRepository
from ridepay.services.gateway import GatewayClient, normalize_provider_status
from ridepay.services.log_context import bind_request_context
from ridepay.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class EntryResult:
    ok: bool
    outcome: Outcome
    resolution: Resolution | None = None
    message: str = ""


def parse_callback(payload: Any) -> tuple[str, Outcome]:
    """Accepts the webhook envelope ``{event, data: {...}}`` or a flat ``{tx_ref, status}`` body."""
    if not isinstance(payload, dict):
        raise PayloadValidationError("Callback body is not an object", payload)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    external_ref = data.get("tx_ref") or data.get("txRef")
    if not isinstance(external_ref, str) or not external_ref:
        raise PayloadValidationError("Callback has no transaction reference", payload)
    return external_ref, normalize_provider_status(data.get("status"))


class PaymentEntryPoints:
    def __init__(
        self,
        engine: ReconciliationEngine,
        gateway: GatewayClient,
        bill_repo: BillRepository,
        webhook_hash: str = "",
    ):
        self._engine = engine
        self._gateway = gateway
        self._bills = bill_repo
        self._webhook_hash = webhook_hash

    async def handle_callback(self, payload: Any, signature: str | None = None) -> EntryResult:
        if self._webhook_hash and not hmac.compare_digest(signature or "", self._webhook_hash):
            logger.warning("Callback rejected: signature mismatch")
            return EntryResult(ok=False, outcome=Outcome.AMBIGUOUS, message="Invalid signature")
        try:
            external_ref, outcome = parse_callback(payload)
        except PayloadValidationError as exc:
            logger.warning("Callback ignored: %s payload=%s", exc.message, payload)
            return EntryResult(ok=False, outcome=Outcome.AMBIGUOUS, message=exc.message)
        with bind_request_context(tx_ref=external_ref, entry="callback"):
            resolution = await self._engine.apply(external_ref, outcome, snapshot=payload)
        return EntryResult(ok=True, outcome=outcome, resolution=resolution)

    async def handle_redirect(self, external_ref: str, advisory_status: str | None) -> EntryResult:
        with bind_request_context(tx_ref=external_ref, entry="redirect"):
            logger.info("Redirect received: advisory_status=%s", advisory_status)
            return await self._verify_and_apply(external_ref)

    async def manual_verify(self, external_ref: str) -> EntryResult:
        with bind_request_context(tx_ref=external_ref, entry="manual"):
            result = await self._verify_and_apply(external_ref)
            bill = result.resolution.bill if result.resolution else None
            if bill and bill.status is BillStatus.COMPLETED and not bill.activation_applied:
                if await self._engine.resume_activation(external_ref):
                    result.resolution = Resolution(
                        bill=await self._bills.get_by_ref(external_ref) or bill,
                        activated=True,
                        transitioned=result.resolution.transitioned,
                    )
            return result

    async def _verify_and_apply(self, external_ref: str) -> EntryResult:
        if await self._bills.get_by_ref(external_ref) is None:
            raise BillNotFoundError(external_ref)
        try:
            results = await self._gateway.verify(external_ref)
        except TransportError as exc:
            logger.warning("Verification unavailable, left for the next sweep: %s", exc.message)
            resolution = await self._engine.apply(external_ref, Outcome.AMBIGUOUS)
            return EntryResult(
                ok=False,
                outcome=Outcome.AMBIGUOUS,
                resolution=resolution,
                message="Payment provider unavailable",
            )
        match = next((item for item in results if item.external_ref == external_ref), None)
        if match is None:
            resolution = await self._engine.apply(external_ref, Outcome.AMBIGUOUS)
            return EntryResult(
                ok=True,
                outcome=Outcome.AMBIGUOUS,
                resolution=resolution,
                message="Provider has no record of this payment yet",
            )
        resolution = await self._engine.apply(external_ref, match.outcome, snapshot=match.raw_payload)
        return EntryResult(ok=True, outcome=match.outcome, resolution=resolution)
