"""Credit reservation for generation requests: reserve, call provider, compensate."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.generation import Generation
from services.compute_provider import ComputeProvider, ProviderResult, build_design_prompt
from services.errors import (
    AccountNotFound,
    DuplicateTransaction,
    InsufficientCredits,
    MalformedRequest,
    ProviderFailure,
    RateLimited,
)
from services.ledger import adjust_balance, find_refund_for, get_account, has_purchase
from services.rate_limiter import RateLimiter, limit_for

logger = logging.getLogger(__name__)


def tier_costs() -> Dict[str, int]:
    return {
        "standard": max(int(settings.CREDIT_COST_STANDARD), 1),
        "premium": max(int(settings.CREDIT_COST_PREMIUM), 1),
    }


def credit_cost(tier: str) -> int:
    costs = tier_costs()
    if tier not in costs:
        raise MalformedRequest(f"Unknown tier: {tier}", context={"tier": tier, "allowed": sorted(costs)})
    return costs[tier]


async def compensate_generation(db: AsyncSession, generation: Generation, *, reason: str) -> bool:
    """Refund a failed generation's reservation at most once.

    Returns True when this call issued the refund, False when one already
    existed (or the account is gone). The generation is always left ``failed``.
    """
    generation_id = generation.id
    cost = int(generation.cost)
    account_id = generation.account_id
    now = datetime.now(timezone.utc)

    if await find_refund_for(db, generation_id):
        generation.status = "failed"
        generation.error = generation.error or reason
        generation.completed_at = generation.completed_at or now
        await db.commit()
        logger.info("Refund already issued for generation", extra={"generation_id": generation_id})
        return False

    try:
        await adjust_balance(
            db,
            account_id,
            cost,
            kind="refund",
            generation_id=generation_id,
            metadata={"generation_id": generation_id, "reason": reason},
            commit=False,
        )
    except DuplicateTransaction:
        # A concurrent compensation won.
        refreshed = await db.get(Generation, generation_id, populate_existing=True)
        if refreshed is not None and refreshed.status != "failed":
            refreshed.status = "failed"
            refreshed.error = refreshed.error or reason
            refreshed.completed_at = refreshed.completed_at or now
        await db.commit()
        logger.info("Refund raced with another compensation", extra={"generation_id": generation_id})
        return False
    except AccountNotFound:
        generation.status = "failed"
        generation.error = f"{reason}; account closed before refund"
        generation.completed_at = now
        await db.commit()
        logger.warning(
            "Cannot refund generation for a deleted account",
            extra={"generation_id": generation_id, "account_id": account_id},
        )
        return False

    generation.status = "failed"
    generation.error = reason
    generation.completed_at = now
    await db.commit()
    logger.info(
        "Generation refunded",
        extra={"generation_id": generation_id, "account_id": account_id, "credits": cost, "reason": reason},
    )
    return True


async def request_generation(
    db: AsyncSession,
    *,
    account_id: str,
    tier: str,
    image_url: str,
    room_type: str,
    theme: str,
    custom_prompt: Optional[str] = None,
    rate_limiter: RateLimiter,
    provider: ComputeProvider,
    timeout: Optional[float] = None,
) -> Generation:
    """Run one paid generation end to end.

    The usage debit is the final charge. Every non-success outcome from the
    provider (error, timeout, no usable outputs) is compensated with a refund
    before ``ProviderFailure`` reaches the caller.
    """
    paid = await has_purchase(db, account_id)
    decision = await rate_limiter.check(account_id, limit=limit_for(paid))
    if not decision.allowed:
        logger.warning(
            "Generation rate limit exceeded",
            extra={"account_id": account_id, "limit": decision.limit, "degraded": decision.degraded},
        )
        raise RateLimited(
            "Rate limit exceeded. Please wait before starting another generation.",
            remaining=decision.remaining,
            reset_at=decision.reset_at,
        )

    account = await get_account(db, account_id)
    if not account:
        raise AccountNotFound("Account not found", context={"account_id": account_id})

    cost = credit_cost(tier)
    if account.balance < cost:
        raise InsufficientCredits(
            f"Insufficient credits. Required: {cost}, available: {account.balance}",
            context={"required": cost, "available": account.balance, "tier": tier},
        )

    prompt = build_design_prompt(room_type, theme, custom_prompt)
    generation = Generation(
        account_id=account_id,
        tier=tier,
        cost=cost,
        status="pending",
        image_url=image_url,
        prompt=prompt,
    )
    try:
        db.add(generation)
        await db.flush()
        generation_id = generation.id
        await adjust_balance(
            db,
            account_id,
            -cost,
            kind="usage",
            generation_id=generation_id,
            metadata={"generation_id": generation_id, "tier": tier},
            commit=False,
        )
        generation.status = "processing"
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Credits reserved for generation",
        extra={"generation_id": generation_id, "account_id": account_id, "tier": tier, "cost": cost},
    )

    deadline = float(settings.PROVIDER_TIMEOUT_SECONDS if timeout is None else timeout)
    result: Optional[ProviderResult] = None
    failure: Optional[str] = None
    try:
        result = await asyncio.wait_for(
            provider.generate(image_url=image_url, prompt=prompt, tier=tier),
            timeout=deadline,
        )
    except asyncio.TimeoutError:
        failure = f"Provider timed out after {deadline:g}s"
    except Exception as exc:
        logger.error(
            "Compute provider call failed",
            extra={"generation_id": generation_id},
            exc_info=True,
        )
        failure = f"Provider error: {exc}"

    if result is not None:
        generation.prediction_id = result.prediction_id
        if not result.succeeded:
            failure = result.error or f"Provider returned no usable outputs (status={result.status})"

    if failure is not None:
        await compensate_generation(db, generation, reason=failure)
        raise ProviderFailure(
            "Generation failed. Your credits have been refunded.",
            context={"generation_id": generation_id, "reason": failure},
        )

    generation.status = "succeeded"
    generation.output_urls = list(result.outputs)
    generation.completed_at = datetime.now(timezone.utc)
    await db.commit()
    logger.info(
        "Generation succeeded",
        extra={"generation_id": generation_id, "outputs": len(result.outputs)},
    )
    return generation


async def get_generation_for_account(db: AsyncSession, generation_id: str, account_id: str) -> Optional[Generation]:
    result = await db.execute(
        select(Generation).where(Generation.id == generation_id, Generation.account_id == account_id)
    )
    return result.scalar_one_or_none()
