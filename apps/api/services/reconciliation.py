"""Background safety net for reservations whose request died before compensating."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.generation import GENERATION_IN_FLIGHT_STATUSES, Generation
from services.generation import compensate_generation
from services.webhook_dedup import prune_webhook_events

logger = logging.getLogger(__name__)


async def sweep_stale_generations(
    db: AsyncSession,
    *,
    sla_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Fail and refund generations left in flight past the refund SLA window."""
    minutes = max(int(sla_minutes if sla_minutes is not None else settings.REFUND_SLA_MINUTES), 1)
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=minutes)
    result = await db.execute(
        select(Generation)
        .where(
            Generation.status.in_(GENERATION_IN_FLIGHT_STATUSES),
            Generation.created_at < cutoff,
        )
        .order_by(Generation.created_at)
    )
    stale = [generation.id for generation in result.scalars().all()]

    refunded = 0
    for generation_id in stale:
        generation = await db.get(Generation, generation_id, populate_existing=True)
        if generation is None or generation.status not in GENERATION_IN_FLIGHT_STATUSES:
            continue
        try:
            issued = await compensate_generation(
                db,
                generation,
                reason=f"Generation exceeded the {minutes} minute refund window",
            )
        except Exception:
            await db.rollback()
            logger.error("Stale generation refund failed", extra={"generation_id": generation_id}, exc_info=True)
            continue
        if issued:
            refunded += 1

    if stale:
        logger.info("Refund sweep finished", extra={"stale": len(stale), "refunded": refunded})
    return {"stale": len(stale), "refunded": refunded}


async def run_maintenance(db: AsyncSession) -> Dict[str, int]:
    """One tick of the periodic loop: refund sweep, then webhook marker pruning."""
    summary = await sweep_stale_generations(db)
    summary["pruned_webhook_events"] = await prune_webhook_events(db)
    return summary
