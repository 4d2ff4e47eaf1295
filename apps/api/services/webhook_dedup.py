"""Durable (source, event_id) claims for at-least-once webhook delivery."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.webhook_event import WebhookEvent


PAYMENT_SOURCE = "stripe"
IDENTITY_SOURCE = "clerk"


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported dialect for webhook claims: {dialect}")


async def try_claim(
    db: AsyncSession,
    source: str,
    event_id: str,
    *,
    event_type: Optional[str] = None,
    commit: bool = True,
) -> bool:
    """Return True for exactly one caller per (source, event_id).

    A single INSERT ... ON CONFLICT DO NOTHING, so two concurrent redeliveries
    cannot both win. With ``commit=False`` the claim becomes durable only when
    the caller commits the rest of its work, and disappears on rollback.
    """
    insert = _insert_for(db)
    stmt = (
        insert(WebhookEvent)
        .values(source=source, event_id=event_id, event_type=event_type)
        .on_conflict_do_nothing(index_elements=["source", "event_id"])
    )
    result = await db.execute(stmt)
    claimed = (result.rowcount or 0) == 1
    if commit:
        await db.commit()
    return claimed


async def prune_webhook_events(
    db: AsyncSession,
    *,
    retention_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Delete markers older than the retention window (longer than upstream redelivery)."""
    days = max(int(retention_days if retention_days is not None else settings.WEBHOOK_EVENT_RETENTION_DAYS), 1)
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    result = await db.execute(delete(WebhookEvent).where(WebhookEvent.processed_at < cutoff))
    await db.commit()
    return int(result.rowcount or 0)
