"""Billing, credits and rate-limit status router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from routers.auth_scope import get_current_account, require_admin_key
from routers.rate_limit import get_rate_limiter, rate_limit
from services.credit_packages import create_checkout_session, credit_packages, get_credit_package
from services.errors import AccountNotFound, MalformedRequest
from services.ledger import adjust_balance, get_account, get_account_by_external_id, get_credit_summary, has_purchase
from services.rate_limiter import RateLimiter, limit_for

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    package_id: str = Field(min_length=1, max_length=64)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class BonusGrantRequest(BaseModel):
    account_id: Optional[str] = None
    external_id: Optional[str] = None
    credits: int = Field(ge=1, le=10000)
    reason: str = Field(default="admin_grant", max_length=200)


class RateLimitResetRequest(BaseModel):
    account_id: str


async def _resolve_target(db: AsyncSession, account_id: Optional[str], external_id: Optional[str]) -> Account:
    if not account_id and not external_id:
        raise MalformedRequest("Provide account_id or external_id.")
    account = await get_account(db, account_id) if account_id else await get_account_by_external_id(db, external_id)
    if not account:
        raise AccountNotFound("Account not found", context={"account_id": account_id, "external_id": external_id})
    return account


@router.get("/packages")
async def list_packages():
    return {
        "packages": [
            {"id": p.id, "name": p.name, "credits": p.credits, "price_cents": p.price_cents}
            for p in credit_packages()
            if p.active
        ]
    }


@router.get("/credits")
async def credits_summary(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(db, account)


@router.post("/checkout")
async def start_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20)),
    account: Account = Depends(get_current_account),
):
    package = get_credit_package(request.package_id)
    if not package:
        raise MalformedRequest(f"Unknown credit package: {request.package_id}")

    try:
        session = await create_checkout_session(
            external_id=account.external_id,
            email=account.email,
            package=package,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return {"url": session.url, "session_id": session.id, "package_id": package.id}


@router.post("/bonus", dependencies=[Depends(require_admin_key)])
async def grant_bonus(
    request: BonusGrantRequest,
    db: AsyncSession = Depends(get_db),
):
    account = await _resolve_target(db, request.account_id, request.external_id)
    updated = await adjust_balance(
        db,
        account.id,
        request.credits,
        kind="bonus",
        metadata={"reason": request.reason},
    )
    logger.info(
        "Bonus credits granted",
        extra={"account_id": account.id, "credits": request.credits, "reason": request.reason},
    )
    return {"ok": True, "account_id": account.id, "credits_added": request.credits, "balance": updated.balance}


@router.get("/rate-limit")
async def rate_limit_status(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    paid = await has_purchase(db, account.id)
    decision = await limiter.status(account.id, limit=limit_for(paid))
    return {
        "tier": "paid" if paid else "free",
        "limit": decision.limit,
        "remaining": decision.remaining,
        "reset_at": decision.reset_at,
        "degraded": decision.degraded,
    }


@router.post("/rate-limit/reset", dependencies=[Depends(require_admin_key)])
async def reset_rate_limit(
    request: RateLimitResetRequest,
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    await limiter.reset(request.account_id)
    logger.info("Rate limit window reset", extra={"account_id": request.account_id})
    return {"ok": True, "account_id": request.account_id}
