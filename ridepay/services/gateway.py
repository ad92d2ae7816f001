from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

import aiohttp
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, modes

from ridepay.errors import PayloadValidationError, TransportError
from ridepay.models.bill import Outcome
from ridepay.services.log_context import get_request_context

if TYPE_CHECKING:
    from ridepay.services.payment_methods import PaymentMethod

_SUCCESS_STATUSES = {"successful", "success", "completed"}
_FAILURE_STATUSES = {"failed", "cancelled", "canceled", "error"}


@dataclass
class ChargeRequest:
    external_ref: str
    amount: int
    currency: str
    email: str
    phone: str | None = None
    customer_name: str | None = None
    redirect_url: str | None = None


@dataclass
class ProviderResponse:
    external_ref: str
    accepted: bool
    payload: dict[str, Any] = field(default_factory=dict)
    link: str | None = None


@dataclass
class VerificationResult:
    external_ref: str
    outcome: Outcome
    amount: float | None
    currency: str | None
    raw_payload: dict[str, Any]


def normalize_provider_status(status: Any, avs: Any = None) -> Outcome:
    if avs == "avs_noauth":
        return Outcome.AMBIGUOUS
    if not isinstance(status, str):
        return Outcome.AMBIGUOUS
    value = status.strip().lower()
    if value in _SUCCESS_STATUSES:
        return Outcome.SUCCESS
    if value in _FAILURE_STATUSES:
        return Outcome.FAILURE
    return Outcome.AMBIGUOUS


def parse_verification(external_ref: str, body: Any) -> VerificationResult:
    if not isinstance(body, dict):
        raise PayloadValidationError("Verification body is not an object", body)
    data = body.get("data")
    if not isinstance(data, dict):
        raise PayloadValidationError("Verification body has no data object", body)
    meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
    return VerificationResult(
        external_ref=data.get("tx_ref") or external_ref,
        outcome=normalize_provider_status(data.get("status"), meta.get("avs")),
        amount=data.get("amount"),
        currency=data.get("currency"),
        raw_payload=body,
    )


def encrypt_payload(payload: dict[str, Any], encryption_key: str) -> str:
    if len(encryption_key) != 24:
        raise ValueError("Encryption key must be 24 characters long for 3DES.")
    padder = padding.PKCS7(TripleDES.block_size).padder()
    data = padder.update(json.dumps(payload).encode("utf-8")) + padder.finalize()
    encryptor = Cipher(TripleDES(encryption_key.encode("utf-8")), modes.ECB()).encryptor()
    return base64.b64encode(encryptor.update(data) + encryptor.finalize()).decode("ascii")


class GatewayClient:
    """Flutterwave v3 client: charges, hosted checkout links and verification."""

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        encryption_key: str,
        timeout_seconds: float = 15,
        max_concurrency: int = 5,
        notify_admin: Callable[[str], Awaitable[None]] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.encryption_key = encryption_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._max_concurrency = max_concurrency
        self._logger = logging.getLogger(__name__)
        self._session: aiohttp.ClientSession | None = None
        self._notify_admin = notify_admin

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
            )
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        retries: int = 3,
    ) -> tuple[int, dict[str, Any]]:
        context = get_request_context()
        context_str = f"context={context}" if context else "context=none"
        for attempt in range(retries):
            session = await self._get_session()
            try:
                async with session.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json,
                    params=params,
                ) as resp:
                    if resp.status == 401:
                        self._logger.error(
                            "Gateway auth error %s %s: status=%s %s",
                            method,
                            path,
                            resp.status,
                            context_str,
                        )
                        if self._notify_admin:
                            await self._notify_admin(
                                f"⚠️ Payment gateway auth error ({resp.status}) on {path}."
                            )
                        raise TransportError(f"Gateway rejected credentials on {path}")
                    if resp.status in {502, 503, 504} and attempt < retries - 1:
                        await asyncio.sleep(2**attempt)
                        continue
                    if resp.status >= 500:
                        body = await resp.text()
                        self._logger.error(
                            "Gateway error %s %s: status=%s body=%s %s",
                            method,
                            path,
                            resp.status,
                            body,
                            context_str,
                        )
                        raise TransportError(
                            f"Gateway returned {resp.status} on {path}",
                            details={"status": resp.status},
                        )
                    try:
                        body = await resp.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        body = {}
                    return resp.status, body if isinstance(body, dict) else {"data": body}
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt < retries - 1:
                    await asyncio.sleep(2**attempt)
                    continue
                self._logger.error(
                    "Gateway transport error %s %s: error=%s %s",
                    method,
                    path,
                    exc,
                    context_str,
                )
                raise TransportError(f"Gateway unreachable on {path}: {exc}") from exc
        raise TransportError(f"Gateway retries exhausted on {path}")

    async def initiate(self, request: ChargeRequest, method: PaymentMethod) -> ProviderResponse:
        return await method.charge(self, request)

    async def direct_charge(self, charge_type: str, payload: dict[str, Any]) -> ProviderResponse:
        encrypted = encrypt_payload(payload, self.encryption_key)
        status, body = await self._request(
            "POST",
            "/charges",
            json={"client": encrypted},
            params={"type": charge_type},
            retries=1,
        )
        accepted = status == 200 and body.get("status") == "success"
        if not accepted:
            self._logger.warning(
                "Charge rejected: tx_ref=%s type=%s status=%s message=%s",
                payload.get("tx_ref"),
                charge_type,
                status,
                body.get("message"),
            )
        meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
        authorization = meta.get("authorization") if isinstance(meta.get("authorization"), dict) else {}
        return ProviderResponse(
            external_ref=payload["tx_ref"],
            accepted=accepted,
            payload={"status_code": status, **body},
            link=authorization.get("redirect"),
        )

    async def create_payment_link(self, payload: dict[str, Any]) -> ProviderResponse:
        status, body = await self._request("POST", "/payments", json=payload, retries=1)
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        link = data.get("link")
        accepted = body.get("status") == "success" and bool(link)
        if not accepted:
            self._logger.warning(
                "Checkout link rejected: tx_ref=%s status=%s message=%s",
                payload.get("tx_ref"),
                status,
                body.get("message"),
            )
        return ProviderResponse(
            external_ref=payload["tx_ref"],
            accepted=accepted,
            payload={"status_code": status, **body},
            link=link,
        )

    async def verify_one(self, external_ref: str) -> VerificationResult | None:
        """Return None when the provider has no record of the reference."""
        status, body = await self._request(
            "GET",
            "/transactions/verify_by_reference",
            params={"tx_ref": external_ref},
        )
        if status in {400, 404} and body.get("status") != "success":
            self._logger.info(
                "Provider has no record: tx_ref=%s message=%s", external_ref, body.get("message")
            )
            return None
        try:
            return parse_verification(external_ref, body)
        except PayloadValidationError:
            self._logger.warning("Malformed verification payload: tx_ref=%s body=%s", external_ref, body)
            return VerificationResult(
                external_ref=external_ref,
                outcome=Outcome.AMBIGUOUS,
                amount=None,
                currency=None,
                raw_payload=body,
            )

    async def verify(self, refs: str | Iterable[str]) -> list[VerificationResult]:
        external_refs = [refs] if isinstance(refs, str) else list(refs)
        if not external_refs:
            return []
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _guarded(external_ref: str) -> VerificationResult | None | TransportError:
            async with semaphore:
                try:
                    return await self.verify_one(external_ref)
                except TransportError as exc:
                    return exc

        outcomes = await asyncio.gather(*(_guarded(ref) for ref in external_refs))
        errors = [item for item in outcomes if isinstance(item, TransportError)]
        if errors and len(errors) == len(external_refs):
            raise errors[0]
        return [item for item in outcomes if isinstance(item, VerificationResult)]
