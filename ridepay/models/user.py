from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

PLANS = ("basic", "pro")


@dataclass
class PendingPayment:
    external_ref: str
    amount: int
    plan: str
    payment_method: str | None = None


@dataclass
class Subscription:
    plan: str = "basic"
    status: str = "inactive"
    start_date: datetime | None = None
    end_date: datetime | None = None
    payment_method_id: str | None = None
    pending_payment: PendingPayment | None = None


@dataclass
class Role:
    is_renter: bool = True
    is_owner: bool = False


@dataclass
class User:
    id: int
    name: str
    email: str
    phone: str | None = None
    role: Role = field(default_factory=Role)
    subscription: Subscription = field(default_factory=Subscription)
    is_deleted: bool = False
