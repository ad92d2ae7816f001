from __future__ import annotations

import json
from typing import Any

from ridepay.db import Database


class ActivityRepository:
    def __init__(self, db: Database):
        self._db = db

    async def log(self, user_id: int, activity_type: str, details: dict[str, Any] | None = None) -> None:
        await self._db.execute(
            "INSERT INTO user_activity (user_id, activity_type, details) VALUES (?, ?, ?)",
            user_id,
            activity_type,
            json.dumps(details or {}, default=str),
        )

    async def count(self, user_id: int, activity_type: str) -> int:
        row = await self._db.fetchone(
            "SELECT COUNT(*) FROM user_activity WHERE user_id = ? AND activity_type = ?",
            user_id,
            activity_type,
        )
        return row[0] if row else 0

    async def list_for_user(self, user_id: int) -> list[tuple[str, dict[str, Any]]]:
        rows = await self._db.fetchall(
            "SELECT activity_type, details FROM user_activity WHERE user_id = ? ORDER BY id",
            user_id,
        )
        return [(row[0], json.loads(row[1]) if row[1] else {}) for row in rows]
