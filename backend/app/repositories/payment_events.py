from __future__ import annotations

from typing import Any, Mapping

from psycopg.types.json import Jsonb

from ..db import get_conn


async def record_event(event_id: str, event_type: str, payload: Mapping[str, Any]) -> bool:
    """Store a processor event once. Returns False when it was already recorded."""
    async with get_conn() as cur:
        await cur.execute(
            """
            INSERT INTO app.payment_events (event_id, event_type, payload, received_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (event_id) DO NOTHING
            RETURNING event_id
            """,
            (event_id, event_type, Jsonb(dict(payload))),
        )
        row = await cur.fetchone()
    return row is not None


async def forget_event(event_id: str) -> None:
    async with get_conn() as cur:
        await cur.execute(
            "DELETE FROM app.payment_events WHERE event_id = %s",
            (event_id,),
        )


__all__ = ["forget_event", "record_event"]
