from __future__ import annotations

from datetime import datetime
import json
from typing import Any, Union

import aiosqlite

from ridepay.db import Connection, Database
from ridepay.errors import RaceLostError
from ridepay.models.bill import OPEN_STATUSES, Bill, BillStatus, PaymentMethodKind

Executor = Union[Database, Connection]

_BILL_COLUMNS = """
    id,
    external_ref,
    user_id,
    payer_phone,
    amount,
    currency,
    payment_method,
    status,
    done,
    activation_applied,
    version,
    request_snapshot,
    callback_snapshot,
    created_at,
    updated_at,
    last_checked_at
"""


def _dump(snapshot: dict[str, Any] | None) -> str | None:
    if snapshot is None:
        return None
    return json.dumps(snapshot, default=str)


def _load(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    return json.loads(raw)


def _row_to_bill(row: aiosqlite.Row) -> Bill:
    return Bill(
        id=row["id"],
        external_ref=row["external_ref"],
        user_id=row["user_id"],
        payer_phone=row["payer_phone"],
        amount=row["amount"],
        currency=row["currency"],
        payment_method=PaymentMethodKind(row["payment_method"]),
        status=BillStatus(row["status"]),
        done=bool(row["done"]),
        activation_applied=bool(row["activation_applied"]),
        version=row["version"],
        request_snapshot=_load(row["request_snapshot"]),
        callback_snapshot=_load(row["callback_snapshot"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        last_checked_at=(
            datetime.fromisoformat(row["last_checked_at"]) if row["last_checked_at"] else None
        ),
    )


class BillRepository:
    def __init__(self, db: Database):
        self._db = db

    async def create_bill(
        self,
        external_ref: str,
        user_id: int | None,
        payer_phone: str | None,
        amount: int,
        currency: str,
        payment_method: PaymentMethodKind,
        conn: Executor | None = None,
    ) -> int:
        now = datetime.utcnow().isoformat()
        return await (conn or self._db).insert(
            """
            INSERT INTO bills (
                external_ref,
                user_id,
                payer_phone,
                amount,
                currency,
                payment_method,
                status,
                done,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
            """,
            external_ref,
            user_id,
            payer_phone,
            amount,
            currency,
            payment_method.value,
            now,
            now,
        )

    async def get_by_ref(self, external_ref: str, conn: Executor | None = None) -> Bill | None:
        row = await (conn or self._db).fetchone(
            f"SELECT {_BILL_COLUMNS} FROM bills WHERE external_ref = ?",
            external_ref,
        )
        if not row:
            return None
        return _row_to_bill(row)

    async def mark_initiated(self, external_ref: str, request_snapshot: dict[str, Any]) -> bool:
        rowcount = await self._db.execute_with_rowcount(
            """
            UPDATE bills
            SET status = 'initiated',
                request_snapshot = ?,
                version = version + 1,
                updated_at = ?
            WHERE external_ref = ? AND status = 'pending'
            """,
            _dump(request_snapshot),
            datetime.utcnow().isoformat(),
            external_ref,
        )
        return rowcount == 1

    async def transition(
        self,
        external_ref: str,
        status: BillStatus,
        callback_snapshot: dict[str, Any] | None = None,
        conn: Executor | None = None,
    ) -> None:
        """Move an open bill to a terminal status; raises RaceLostError if it is no longer open."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        placeholders = ", ".join("?" for _ in OPEN_STATUSES)
        rowcount = await (conn or self._db).execute_with_rowcount(
            f"""
            UPDATE bills
            SET status = ?,
                done = 1,
                callback_snapshot = COALESCE(?, callback_snapshot),
                version = version + 1,
                updated_at = ?
            WHERE external_ref = ?
              AND done = 0
              AND status IN ({placeholders})
            """,
            status.value,
            _dump(callback_snapshot),
            datetime.utcnow().isoformat(),
            external_ref,
            *(item.value for item in OPEN_STATUSES),
        )
        if rowcount != 1:
            raise RaceLostError(external_ref)

    async def claim_activation(self, external_ref: str, conn: Executor | None = None) -> bool:
        rowcount = await (conn or self._db).execute_with_rowcount(
            """
            UPDATE bills
            SET activation_applied = 1,
                version = version + 1,
                updated_at = ?
            WHERE external_ref = ?
              AND status = 'completed'
              AND activation_applied = 0
            """,
            datetime.utcnow().isoformat(),
            external_ref,
        )
        return rowcount == 1

    async def list_unresolved(self, limit: int) -> list[Bill]:
        rows = await self._db.fetchall(
            f"""
            SELECT {_BILL_COLUMNS}
            FROM bills
            WHERE done = 0
            ORDER BY last_checked_at IS NOT NULL, last_checked_at ASC, created_at ASC
            LIMIT ?
            """,
            limit,
        )
        return [_row_to_bill(row) for row in rows]

    async def touch_checked(self, external_refs: list[str]) -> None:
        if not external_refs:
            return
        placeholders = ", ".join("?" for _ in external_refs)
        await self._db.execute(
            f"UPDATE bills SET last_checked_at = ? WHERE external_ref IN ({placeholders})",
            datetime.utcnow().isoformat(),
            *external_refs,
        )

    async def list_unactivated(self, limit: int) -> list[Bill]:
        rows = await self._db.fetchall(
            f"""
            SELECT {_BILL_COLUMNS}
            FROM bills
            WHERE status = 'completed'
              AND activation_applied = 0
              AND EXISTS (SELECT 1 FROM users u WHERE u.pending_ref = bills.external_ref)
            ORDER BY updated_at ASC
            LIMIT ?
            """,
            limit,
        )
        return [_row_to_bill(row) for row in rows]

    async def count_unresolved(self) -> int:
        row = await self._db.fetchone("SELECT COUNT(*) FROM bills WHERE done = 0")
        return row[0] if row else 0

    async def total_revenue(self) -> int:
        row = await self._db.fetchone(
            "SELECT COALESCE(SUM(amount), 0) FROM bills WHERE done = 1 AND status = 'completed'"
        )
        return int(row[0]) if row else 0
