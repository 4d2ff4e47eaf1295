import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from models.webhook_event import WebhookEvent
from services.webhook_dedup import IDENTITY_SOURCE, PAYMENT_SOURCE, prune_webhook_events, try_claim


@pytest.mark.asyncio
async def test_claim_succeeds_once_per_source_and_event(db):
    assert await try_claim(db, PAYMENT_SOURCE, "evt_1", event_type="checkout.session.completed") is True
    assert await try_claim(db, PAYMENT_SOURCE, "evt_1") is False
    # Same id from a different source is an unrelated event.
    assert await try_claim(db, IDENTITY_SOURCE, "evt_1") is True


@pytest.mark.asyncio
async def test_uncommitted_claim_disappears_on_rollback(db):
    assert await try_claim(db, PAYMENT_SOURCE, "evt_rollback", commit=False) is True
    await db.rollback()

    assert await try_claim(db, PAYMENT_SOURCE, "evt_rollback") is True


@pytest.mark.asyncio
async def test_concurrent_claims_have_a_single_winner(session_maker):
    async def claim():
        async with session_maker() as session:
            return await try_claim(session, PAYMENT_SOURCE, "evt_race")

    results = await asyncio.gather(*(claim() for _ in range(6)))

    assert results.count(True) == 1
    async with session_maker() as check:
        count = await check.execute(select(func.count()).select_from(WebhookEvent))
        assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_prune_removes_only_markers_past_retention(db):
    now = datetime.now(timezone.utc)
    db.add(WebhookEvent(source=PAYMENT_SOURCE, event_id="old", processed_at=now - timedelta(days=45)))
    db.add(WebhookEvent(source=PAYMENT_SOURCE, event_id="recent", processed_at=now - timedelta(days=2)))
    await db.commit()

    removed = await prune_webhook_events(db, retention_days=30, now=now)

    assert removed == 1
    remaining = await db.execute(select(WebhookEvent.event_id))
    assert remaining.scalars().all() == ["recent"]
