from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from psycopg.types.json import Jsonb

from ..db import get_conn

_COLUMNS = """
    id,
    user_id,
    service_id,
    stripe_subscription_id,
    status,
    price,
    start_date,
    end_date,
    renewal_date,
    metadata,
    created_at,
    updated_at
"""


async def list_for_user(user_id: str) -> list[dict[str, Any]]:
    async with get_conn() as cur:
        await cur.execute(
            f"""
            SELECT {_COLUMNS}
              FROM app.subscriptions
             WHERE user_id = %s
             ORDER BY created_at DESC
            """,
            (user_id,),
        )
        rows = await cur.fetchall()
    return [dict(row) for row in rows]


async def list_for_user_service(user_id: str, service_id: str) -> list[dict[str, Any]]:
    async with get_conn() as cur:
        await cur.execute(
            f"""
            SELECT {_COLUMNS}
              FROM app.subscriptions
             WHERE user_id = %s
               AND service_id = %s
             ORDER BY created_at DESC
            """,
            (user_id, service_id),
        )
        rows = await cur.fetchall()
    return [dict(row) for row in rows]


async def list_by_status(user_id: str, statuses: Iterable[str]) -> list[dict[str, Any]]:
    async with get_conn() as cur:
        await cur.execute(
            f"""
            SELECT {_COLUMNS}
              FROM app.subscriptions
             WHERE user_id = %s
               AND status = ANY(%s)
             ORDER BY created_at DESC
            """,
            (user_id, list(statuses)),
        )
        rows = await cur.fetchall()
    return [dict(row) for row in rows]


async def get_for_user(subscription_id: str, user_id: str) -> dict[str, Any] | None:
    async with get_conn() as cur:
        await cur.execute(
            f"""
            SELECT {_COLUMNS}
              FROM app.subscriptions
             WHERE id = %s
               AND user_id = %s
             LIMIT 1
            """,
            (subscription_id, user_id),
        )
        row = await cur.fetchone()
    return dict(row) if row else None


async def get_by_stripe_id(stripe_subscription_id: str) -> dict[str, Any] | None:
    async with get_conn() as cur:
        await cur.execute(
            f"""
            SELECT {_COLUMNS}
              FROM app.subscriptions
             WHERE stripe_subscription_id = %s
             ORDER BY created_at DESC
             LIMIT 1
            """,
            (stripe_subscription_id,),
        )
        row = await cur.fetchone()
    return dict(row) if row else None


async def insert_subscription(
    *,
    subscription_id: str,
    user_id: str,
    service_id: str,
    stripe_subscription_id: str | None,
    status: str,
    price: int,
    start_date: datetime | None,
    end_date: datetime | None,
    renewal_date: datetime | None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Insert a subscription mirror row.

    Raises ``psycopg.errors.UniqueViolation`` when the user already holds a live
    (active or trial) subscription for the service.
    """
    async with get_conn() as cur:
        await cur.execute(
            f"""
            INSERT INTO app.subscriptions (
                id,
                user_id,
                service_id,
                stripe_subscription_id,
                status,
                price,
                start_date,
                end_date,
                renewal_date,
                metadata,
                created_at,
                updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now(), now())
            RETURNING {_COLUMNS}
            """,
            (
                subscription_id,
                user_id,
                service_id,
                stripe_subscription_id,
                status,
                price,
                start_date,
                end_date,
                renewal_date,
                Jsonb(metadata or {}),
            ),
        )
        row = await cur.fetchone()
    return dict(row)


async def update_status(
    subscription_id: str,
    status: str,
    *,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    renewal_date: datetime | None = None,
) -> dict[str, Any] | None:
    async with get_conn() as cur:
        await cur.execute(
            f"""
            UPDATE app.subscriptions
               SET status = %s,
                   start_date = COALESCE(%s, start_date),
                   end_date = COALESCE(%s, end_date),
                   renewal_date = COALESCE(%s, renewal_date),
                   updated_at = now()
             WHERE id = %s
            RETURNING {_COLUMNS}
            """,
            (status, start_date, end_date, renewal_date, subscription_id),
        )
        row = await cur.fetchone()
    return dict(row) if row else None


async def record_cancellation(
    subscription_id: str,
    status: str,
    *,
    end_date: datetime | None,
    metadata: dict[str, Any],
) -> dict[str, Any] | None:
    """Store a user cancellation, merging ``metadata`` into the existing JSON."""
    async with get_conn() as cur:
        await cur.execute(
            f"""
            UPDATE app.subscriptions
               SET status = %s,
                   end_date = COALESCE(%s, end_date),
                   metadata = metadata || %s,
                   updated_at = now()
             WHERE id = %s
            RETURNING {_COLUMNS}
            """,
            (status, end_date, Jsonb(metadata), subscription_id),
        )
        row = await cur.fetchone()
    return dict(row) if row else None


__all__ = [
    "get_by_stripe_id",
    "get_for_user",
    "insert_subscription",
    "list_by_status",
    "list_for_user",
    "list_for_user_service",
    "record_cancellation",
    "update_status",
]
