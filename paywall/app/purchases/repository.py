"""Persistence layer for purchases."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .models import ACTIVE_STATUSES, CreateResult, Purchase, PurchaseStatus, validate_transition

logger = logging.getLogger("paywall.purchases")

_ACTIVE_STATUS_SQL = ", ".join(f"'{status.value}'" for status in sorted(ACTIVE_STATUSES, key=lambda s: s.value))

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS purchases (
    purchase_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    material_id TEXT NOT NULL,
    price_charged NUMERIC(12, 2) NOT NULL CHECK (price_charged >= 0),
    currency CHAR(3) NOT NULL,
    status TEXT NOT NULL,
    external_transaction_id TEXT UNIQUE,
    external_client_secret TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS purchases_active_pair_idx
    ON purchases (user_id, material_id)
    WHERE status IN ({_ACTIVE_STATUS_SQL});
CREATE INDEX IF NOT EXISTS purchases_user_idx ON purchases (user_id, created_at DESC);
"""

# Conflicting row can leave the active set between the insert and the lookup.
_CREATE_ATTEMPTS = 3


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_purchase(row: dict) -> Purchase:
    return Purchase(
        purchase_id=row["purchase_id"],
        user_id=row["user_id"],
        material_id=row["material_id"],
        price_charged=Decimal(row["price_charged"]),
        currency=row["currency"].strip(),
        status=PurchaseStatus(row["status"]),
        external_transaction_id=row.get("external_transaction_id"),
        external_client_secret=row.get("external_client_secret"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresEntitlementStore:
    """Entitlement store backed by PostgreSQL.

    Uniqueness of active purchases is enforced by the partial unique index
    ``purchases_active_pair_idx``; status changes are compare-and-swap
    updates keyed on the expected current status.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_SQL)

    def create_if_absent(self, purchase: Purchase) -> CreateResult:
        for _ in range(_CREATE_ATTEMPTS):
            with self._cursor() as cursor:
                cursor.execute(
                    f"""
                    INSERT INTO purchases (
                        purchase_id,
                        user_id,
                        material_id,
                        price_charged,
                        currency,
                        status,
                        external_transaction_id,
                        external_client_secret,
                        created_at,
                        updated_at
                    )
                    VALUES (%(purchase_id)s, %(user_id)s, %(material_id)s, %(price_charged)s,
                            %(currency)s, %(status)s, %(external_transaction_id)s,
                            %(external_client_secret)s, %(created_at)s, %(updated_at)s)
                    ON CONFLICT (user_id, material_id) WHERE status IN ({_ACTIVE_STATUS_SQL})
                    DO NOTHING
                    RETURNING *
                    """,
                    {
                        "purchase_id": purchase.purchase_id,
                        "user_id": purchase.user_id,
                        "material_id": purchase.material_id,
                        "price_charged": purchase.price_charged,
                        "currency": purchase.currency,
                        "status": purchase.status.value,
                        "external_transaction_id": purchase.external_transaction_id,
                        "external_client_secret": purchase.external_client_secret,
                        "created_at": purchase.created_at,
                        "updated_at": purchase.updated_at,
                    },
                )
                row = cursor.fetchone()
                if row:
                    return CreateResult.created(_row_to_purchase(row))

                cursor.execute(
                    f"""
                    SELECT *
                    FROM purchases
                    WHERE user_id = %s AND material_id = %s AND status IN ({_ACTIVE_STATUS_SQL})
                    LIMIT 1
                    """,
                    (purchase.user_id, purchase.material_id),
                )
                existing = cursor.fetchone()
                if existing:
                    return CreateResult.conflicting(_row_to_purchase(existing))
            logger.info(
                "Active purchase for user=%s material=%s vanished during create; retrying",
                purchase.user_id,
                purchase.material_id,
            )
        raise RuntimeError("Failed to persist purchase after repeated conflicts")

    def transition_status(
        self,
        purchase_id: str,
        expected: PurchaseStatus,
        next_status: PurchaseStatus,
        *,
        external_transaction_id: Optional[str] = None,
        external_client_secret: Optional[str] = None,
    ) -> Optional[Purchase]:
        validate_transition(expected, next_status)
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE purchases
                SET status = %(next_status)s,
                    external_transaction_id = COALESCE(%(external_transaction_id)s, external_transaction_id),
                    external_client_secret = COALESCE(%(external_client_secret)s, external_client_secret),
                    updated_at = NOW()
                WHERE purchase_id = %(purchase_id)s AND status = %(expected)s
                RETURNING *
                """,
                {
                    "next_status": next_status.value,
                    "external_transaction_id": external_transaction_id,
                    "external_client_secret": external_client_secret,
                    "purchase_id": purchase_id,
                    "expected": expected.value,
                },
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def get(self, purchase_id: str) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM purchases
                WHERE purchase_id = %s
                LIMIT 1
                """,
                (purchase_id,),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def get_by_transaction_id(self, transaction_id: str) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM purchases
                WHERE external_transaction_id = %s
                LIMIT 1
                """,
                (transaction_id,),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def is_owned(self, user_id: str, material_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT EXISTS (
                    SELECT 1
                    FROM purchases
                    WHERE user_id = %s AND material_id = %s AND status = %s
                ) AS owned
                """,
                (user_id, material_id, PurchaseStatus.COMPLETED.value),
            )
            row = cursor.fetchone()
            return bool(row and row["owned"])

    def list_for_user(self, user_id: str) -> list[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM purchases
                WHERE user_id = %s
                ORDER BY created_at DESC
                """,
                (user_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_purchase(row) for row in rows]

    def list_all(self, *, limit: int = 500) -> list[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM purchases
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_purchase(row) for row in rows]

    def list_pending_before(self, cutoff: datetime) -> list[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM purchases
                WHERE status = %s AND created_at < %s
                ORDER BY created_at
                """,
                (PurchaseStatus.PENDING.value, cutoff),
            )
            rows = cursor.fetchall() or []
            return [_row_to_purchase(row) for row in rows]


__all__ = ["PostgresEntitlementStore", "SCHEMA_SQL", "managed_connection"]
