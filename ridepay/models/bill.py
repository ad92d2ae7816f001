from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class BillStatus(str, Enum):
    PENDING = "pending"
    INITIATED = "initiated"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BillStatus.COMPLETED, BillStatus.FAILED)


OPEN_STATUSES = (BillStatus.PENDING, BillStatus.INITIATED)


class PaymentMethodKind(str, Enum):
    MOBILE_MONEY = "mobile_money"
    CARD = "card"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    AMBIGUOUS = "ambiguous"


@dataclass
class Bill:
    id: int
    external_ref: str
    user_id: int | None
    payer_phone: str | None
    amount: int
    currency: str
    payment_method: PaymentMethodKind
    status: BillStatus
    done: bool
    activation_applied: bool
    version: int
    request_snapshot: dict[str, Any] | None
    callback_snapshot: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    last_checked_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class Resolution:
    bill: Bill
    activated: bool = False
    transitioned: bool = False
