"""Generation request router."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from models.generation import Generation
from routers.auth_scope import get_current_account
from routers.rate_limit import get_rate_limiter
from services.compute_provider import ComputeProvider, ReplicateProvider
from services.errors import NotFound
from services.generation import get_generation_for_account, request_generation
from services.rate_limiter import RateLimiter

router = APIRouter()


class GenerateRequest(BaseModel):
    image_url: str = Field(min_length=1, max_length=2048, pattern=r"^https?://")
    room_type: Literal[
        "living-room",
        "bedroom",
        "kitchen",
        "bathroom",
        "dining-room",
        "office",
        "gaming-room",
    ]
    theme: Literal[
        "modern",
        "minimalist",
        "scandinavian",
        "industrial",
        "tropical",
        "bohemian",
        "vintage",
        "luxury",
    ]
    tier: Literal["standard", "premium"] = "standard"
    custom_prompt: Optional[str] = Field(default=None, max_length=500)


def get_compute_provider(request: Request) -> ComputeProvider:
    provider = getattr(request.app.state, "compute_provider", None)
    if provider is None:
        provider = ReplicateProvider()
        request.app.state.compute_provider = provider
    return provider


def _serialize_generation(generation: Generation) -> dict:
    return {
        "id": generation.id,
        "status": generation.status,
        "tier": generation.tier,
        "cost": generation.cost,
        "prediction_id": generation.prediction_id,
        "output_urls": generation.output_urls or [],
        "error": generation.error,
        "created_at": generation.created_at.isoformat() if generation.created_at else None,
        "completed_at": generation.completed_at.isoformat() if generation.completed_at else None,
    }


@router.post("")
async def create_generation(
    request: GenerateRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    provider: ComputeProvider = Depends(get_compute_provider),
):
    generation = await request_generation(
        db,
        account_id=account.id,
        tier=request.tier,
        image_url=request.image_url,
        room_type=request.room_type,
        theme=request.theme,
        custom_prompt=request.custom_prompt,
        rate_limiter=limiter,
        provider=provider,
    )
    return {"success": True, "generation": _serialize_generation(generation)}


@router.get("/{generation_id}")
async def read_generation(
    generation_id: str,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    generation = await get_generation_for_account(db, generation_id, account.id)
    if not generation:
        raise NotFound("Generation not found")
    return _serialize_generation(generation)
