from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from models.generation import Generation
from models.webhook_event import WebhookEvent
from services.ledger import adjust_balance, create_account, get_account
from services.reconciliation import run_maintenance, sweep_stale_generations


async def _reserved_generation(db, account, *, age_minutes, status="processing"):
    generation = Generation(
        account_id=account.id,
        tier="standard",
        cost=1,
        status=status,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
    )
    db.add(generation)
    await db.flush()
    await adjust_balance(db, account.id, -1, kind="usage", generation_id=generation.id)
    return generation.id


@pytest.mark.asyncio
async def test_sweep_refunds_only_generations_past_the_sla(db):
    account = await create_account(db, external_id="user_sweep", email="s@example.com", initial_balance=5)
    stale_id = await _reserved_generation(db, account, age_minutes=60)
    fresh_id = await _reserved_generation(db, account, age_minutes=1)

    summary = await sweep_stale_generations(db, sla_minutes=15)

    assert summary == {"stale": 1, "refunded": 1}
    assert (await get_account(db, account.id)).balance == 4
    assert (await db.get(Generation, stale_id)).status == "failed"
    assert (await db.get(Generation, fresh_id)).status == "processing"


@pytest.mark.asyncio
async def test_second_sweep_does_not_refund_again(db):
    account = await create_account(db, external_id="user_sweep2", email="s2@example.com", initial_balance=3)
    await _reserved_generation(db, account, age_minutes=120, status="pending")

    first = await sweep_stale_generations(db, sla_minutes=15)
    second = await sweep_stale_generations(db, sla_minutes=15)

    assert first["refunded"] == 1
    assert second == {"stale": 0, "refunded": 0}
    refunds = await db.execute(select(CreditTransaction).where(CreditTransaction.kind == "refund"))
    assert len(refunds.scalars().all()) == 1
    assert (await get_account(db, account.id)).balance == 3


@pytest.mark.asyncio
async def test_maintenance_tick_also_prunes_old_webhook_markers(db):
    db.add(WebhookEvent(source="stripe", event_id="evt_ancient", processed_at=datetime.now(timezone.utc) - timedelta(days=90)))
    await db.commit()

    summary = await run_maintenance(db)

    assert summary["pruned_webhook_events"] == 1
    assert summary["refunded"] == 0
