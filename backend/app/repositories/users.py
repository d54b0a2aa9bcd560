from __future__ import annotations

from typing import Any

from ..db import get_conn


async def get_user(user_id: str) -> dict[str, Any] | None:
    async with get_conn() as cur:
        await cur.execute(
            """
            SELECT id, email, display_name
              FROM app.users
             WHERE id = %s
             LIMIT 1
            """,
            (user_id,),
        )
        row = await cur.fetchone()
    return dict(row) if row else None


async def get_billing_profile(user_id: str) -> dict[str, Any] | None:
    """Return the user joined with the stored billing details, if the user exists."""
    async with get_conn() as cur:
        await cur.execute(
            """
            SELECT u.id,
                   u.email,
                   u.display_name,
                   bd.billing_name,
                   bd.billing_company,
                   bd.billing_vat,
                   bd.billing_address,
                   bd.billing_phone
              FROM app.users AS u
              LEFT JOIN app.billing_details AS bd ON bd.user_id = u.id
             WHERE u.id = %s
             LIMIT 1
            """,
            (user_id,),
        )
        row = await cur.fetchone()
    return dict(row) if row else None


__all__ = ["get_billing_profile", "get_user"]
