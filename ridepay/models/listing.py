from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Listing:
    id: int
    owner_id: int
    title: str
    is_active: bool
    is_featured: bool
    is_deleted: bool
    ranking: int
    boost_start: datetime | None
    boost_expiry: datetime | None


@dataclass
class ListingBoost:
    featured: bool
    ranking: int
    start: datetime
    expiry: datetime

    @classmethod
    def for_plan(cls, plan: str, now: datetime, expiry: datetime) -> "ListingBoost":
        if plan == "pro":
            return cls(featured=True, ranking=100, start=now, expiry=expiry)
        return cls(featured=False, ranking=50, start=now, expiry=expiry)
