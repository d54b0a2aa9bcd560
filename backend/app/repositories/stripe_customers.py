from __future__ import annotations

from ..db import get_conn


async def get_customer_id_for_user(user_id: str) -> str | None:
    async with get_conn() as cur:
        await cur.execute(
            """
            SELECT customer_id
              FROM app.stripe_customers
             WHERE user_id = %s
             LIMIT 1
            """,
            (user_id,),
        )
        row = await cur.fetchone()
    return row["customer_id"] if row else None


async def get_user_id_by_customer(customer_id: str) -> str | None:
    async with get_conn() as cur:
        await cur.execute(
            """
            SELECT user_id
              FROM app.stripe_customers
             WHERE customer_id = %s
             LIMIT 1
            """,
            (customer_id,),
        )
        row = await cur.fetchone()
    return str(row["user_id"]) if row else None


__all__ = ["get_customer_id_for_user", "get_user_id_by_customer"]
