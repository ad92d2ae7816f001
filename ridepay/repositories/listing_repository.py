from __future__ import annotations

from datetime import datetime
from typing import Union

from ridepay.db import Connection, Database
from ridepay.models.listing import Listing, ListingBoost

Executor = Union[Database, Connection]


class ListingRepository:
    def __init__(self, db: Database):
        self._db = db

    async def create_listing(self, owner_id: int, title: str, is_deleted: bool = False) -> int:
        return await self._db.insert(
            "INSERT INTO listings (owner_id, title, is_deleted) VALUES (?, ?, ?)",
            owner_id,
            title,
            int(is_deleted),
        )

    async def list_by_owner(self, owner_id: int, conn: Executor | None = None) -> list[Listing]:
        rows = await (conn or self._db).fetchall(
            """
            SELECT
                id,
                owner_id,
                title,
                is_active,
                is_featured,
                is_deleted,
                ranking,
                boost_start,
                boost_expiry
            FROM listings
            WHERE owner_id = ?
            ORDER BY id
            """,
            owner_id,
        )
        return [
            Listing(
                id=row["id"],
                owner_id=row["owner_id"],
                title=row["title"],
                is_active=bool(row["is_active"]),
                is_featured=bool(row["is_featured"]),
                is_deleted=bool(row["is_deleted"]),
                ranking=row["ranking"],
                boost_start=datetime.fromisoformat(row["boost_start"]) if row["boost_start"] else None,
                boost_expiry=datetime.fromisoformat(row["boost_expiry"]) if row["boost_expiry"] else None,
            )
            for row in rows
        ]

    async def boost_owned(
        self,
        owner_id: int,
        boost: ListingBoost,
        conn: Executor | None = None,
    ) -> list[int]:
        executor = conn or self._db
        rows = await executor.fetchall(
            "SELECT id FROM listings WHERE owner_id = ? AND is_deleted = 0 ORDER BY id",
            owner_id,
        )
        listing_ids = [row["id"] for row in rows]
        if not listing_ids:
            return []
        await executor.execute(
            """
            UPDATE listings
            SET is_active = 1,
                is_featured = ?,
                ranking = ?,
                boost_start = ?,
                boost_expiry = ?
            WHERE owner_id = ? AND is_deleted = 0
            """,
            int(boost.featured),
            boost.ranking,
            boost.start.isoformat(),
            boost.expiry.isoformat(),
            owner_id,
        )
        return listing_ids
