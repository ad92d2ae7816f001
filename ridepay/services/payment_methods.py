from __future__ import annotations

from dataclasses import dataclass
import re
from typing import TYPE_CHECKING, ClassVar

from ridepay.errors import InvalidPaymentRequest
from ridepay.models.bill import PaymentMethodKind
from ridepay.services.gateway import ChargeRequest, ProviderResponse

if TYPE_CHECKING:
    from ridepay.services.gateway import GatewayClient

_EXPIRY_RE = re.compile(r"^\d{2}/\d{2}$")


class PaymentMethod:
    kind: ClassVar[PaymentMethodKind]

    @property
    def payer_phone(self) -> str | None:
        return None

    def validate(self) -> None:
        pass

    async def charge(self, gateway: GatewayClient, request: ChargeRequest) -> ProviderResponse:
        raise NotImplementedError


@dataclass
class MobileMoney(PaymentMethod):
    phone: str
    network: str = "mobile_money_rwanda"

    kind: ClassVar[PaymentMethodKind] = PaymentMethodKind.MOBILE_MONEY

    @property
    def payer_phone(self) -> str | None:
        return self.phone

    def validate(self) -> None:
        digits = re.sub(r"\D", "", self.phone or "")
        if len(digits) != 12:
            raise InvalidPaymentRequest("Invalid phone number format")

    async def charge(self, gateway: GatewayClient, request: ChargeRequest) -> ProviderResponse:
        return await gateway.direct_charge(
            self.network,
            {
                "tx_ref": request.external_ref,
                "amount": request.amount,
                "currency": request.currency,
                "phone_number": self.phone,
                "email": request.email,
            },
        )


@dataclass
class CardDetails:
    card_number: str
    cvv: str
    expiry_date: str

    def expiry(self) -> tuple[str, str]:
        if not _EXPIRY_RE.match(self.expiry_date or ""):
            raise InvalidPaymentRequest("Invalid expiry date format. Expected MM/YY.")
        month, year = self.expiry_date.split("/")
        return month, f"20{year}"


@dataclass
class Card(PaymentMethod):
    """Direct charge when details are present, hosted checkout otherwise."""

    details: CardDetails | None = None
    phone: str | None = None
    billing_zip: str = "250"
    billing_address: str = "Kigali, Kicukiro"

    kind: ClassVar[PaymentMethodKind] = PaymentMethodKind.CARD

    @property
    def payer_phone(self) -> str | None:
        return self.phone

    def validate(self) -> None:
        if self.details is None:
            return
        if not (self.details.card_number and self.details.cvv and self.details.expiry_date):
            raise InvalidPaymentRequest(
                "Card number, expiry date and CVV are required for direct card payment"
            )
        self.details.expiry()

    async def charge(self, gateway: GatewayClient, request: ChargeRequest) -> ProviderResponse:
        if self.details is None:
            return await gateway.create_payment_link(
                {
                    "tx_ref": request.external_ref,
                    "amount": request.amount,
                    "currency": request.currency,
                    "redirect_url": request.redirect_url,
                    "customer": {
                        "email": request.email,
                        "phonenumber": self.phone or request.phone,
                        "name": request.customer_name,
                    },
                    "customizations": {
                        "title": "RUSHAGO Payment",
                        "description": "Payment for RUSHAGO services",
                    },
                }
            )
        expiry_month, expiry_year = self.details.expiry()
        return await gateway.direct_charge(
            "card",
            {
                "tx_ref": request.external_ref,
                "card_number": self.details.card_number,
                "cvv": self.details.cvv,
                "expiry_month": expiry_month,
                "expiry_year": expiry_year,
                "amount": request.amount,
                "currency": request.currency,
                "email": request.email,
                "phone_number": self.phone or request.phone,
                "redirect_url": request.redirect_url,
                "billing_zip": self.billing_zip,
                "billing_address": self.billing_address,
            },
        )
