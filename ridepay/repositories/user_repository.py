from __future__ import annotations

from datetime import datetime
from typing import Union

import aiosqlite

from ridepay.db import Connection, Database
from ridepay.models.user import PendingPayment, Role, Subscription, User

Executor = Union[Database, Connection]

_USER_COLUMNS = """
    id,
    name,
    email,
    phone,
    is_renter,
    is_owner,
    plan,
    subscription_status,
    start_date,
    end_date,
    payment_method_id,
    pending_ref,
    pending_amount,
    pending_plan,
    pending_method,
    is_deleted
"""


def _parse_dt(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def _row_to_user(row: aiosqlite.Row) -> User:
    pending = None
    if row["pending_ref"]:
        pending = PendingPayment(
            external_ref=row["pending_ref"],
            amount=row["pending_amount"],
            plan=row["pending_plan"],
            payment_method=row["pending_method"],
        )
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        phone=row["phone"],
        role=Role(is_renter=bool(row["is_renter"]), is_owner=bool(row["is_owner"])),
        subscription=Subscription(
            plan=row["plan"],
            status=row["subscription_status"],
            start_date=_parse_dt(row["start_date"]),
            end_date=_parse_dt(row["end_date"]),
            payment_method_id=row["payment_method_id"],
            pending_payment=pending,
        ),
        is_deleted=bool(row["is_deleted"]),
    )


class UserRepository:
    def __init__(self, db: Database):
        self._db = db

    async def create_user(self, name: str, email: str, phone: str | None = None) -> int:
        return await self._db.insert(
            "INSERT INTO users (name, email, phone) VALUES (?, ?, ?)",
            name,
            email,
            phone,
        )

    async def get_by_id(self, user_id: int, conn: Executor | None = None) -> User | None:
        row = await (conn or self._db).fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ? AND is_deleted = 0",
            user_id,
        )
        if not row:
            return None
        return _row_to_user(row)

    async def get_by_pending_ref(self, external_ref: str, conn: Executor | None = None) -> User | None:
        row = await (conn or self._db).fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE pending_ref = ?",
            external_ref,
        )
        if not row:
            return None
        return _row_to_user(row)

    async def set_pending_payment(
        self,
        user_id: int,
        pending: PendingPayment,
        conn: Executor | None = None,
    ) -> None:
        await (conn or self._db).execute(
            """
            UPDATE users
            SET pending_ref = ?,
                pending_amount = ?,
                pending_plan = ?,
                pending_method = ?
            WHERE id = ?
            """,
            pending.external_ref,
            pending.amount,
            pending.plan,
            pending.payment_method,
            user_id,
        )

    async def clear_pending_payment(self, external_ref: str, conn: Executor | None = None) -> bool:
        rowcount = await (conn or self._db).execute_with_rowcount(
            """
            UPDATE users
            SET pending_ref = NULL,
                pending_amount = NULL,
                pending_plan = NULL,
                pending_method = NULL
            WHERE pending_ref = ?
            """,
            external_ref,
        )
        return rowcount == 1

    async def activate_subscription(
        self,
        user_id: int,
        plan: str,
        start_date: datetime,
        end_date: datetime,
        payment_method_id: str | None,
        expected_pending_ref: str | None = None,
        conn: Executor | None = None,
    ) -> bool:
        """
        Switch the user to an active plan.

        With expected_pending_ref the update only applies while that payment is
        still the pending one, and clears it. Without it the pending payment is
        left in place for its own bill to resolve.
        """
        clear_pending = (
            """,
                pending_ref = NULL,
                pending_amount = NULL,
                pending_plan = NULL,
                pending_method = NULL"""
            if expected_pending_ref is not None
            else ""
        )
        sql = f"""
            UPDATE users
            SET plan = ?,
                subscription_status = 'active',
                start_date = ?,
                end_date = ?,
                payment_method_id = ?,
                is_owner = 1{clear_pending}
            WHERE id = ?
        """
        params: list[object] = [
            plan,
            start_date.isoformat(),
            end_date.isoformat(),
            payment_method_id,
            user_id,
        ]
        if expected_pending_ref is not None:
            sql += " AND pending_ref = ?"
            params.append(expected_pending_ref)
        rowcount = await (conn or self._db).execute_with_rowcount(sql, *params)
        return rowcount == 1
