"""Image generation provider client and prompt construction."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from config import settings

logger = logging.getLogger(__name__)

POSITIVE_PROMPT = (
    "beautiful interior design, professional photography, well-lit, "
    "detailed textures, high quality, realistic, modern aesthetic, clean composition"
)
NEGATIVE_PROMPT = (
    "blurry, distorted, ugly, deformed, low quality, poorly lit, "
    "cluttered, amateur, watermark, text"
)

ROOM_DESCRIPTIONS: Dict[str, str] = {
    "living-room": "a modern living room with comfortable seating",
    "bedroom": "a relaxing bedroom with a stylish bed",
    "kitchen": "a functional kitchen with modern appliances",
    "bathroom": "a clean, bright bathroom",
    "dining-room": "an elegant dining room with a table",
    "office": "a productive home office",
    "gaming-room": "a high-tech gaming setup",
}

THEME_MODIFIERS: Dict[str, str] = {
    "modern": "contemporary, sleek, minimalist, clean lines",
    "minimalist": "minimalist, clutter-free, simple, elegant",
    "scandinavian": "Scandinavian design, light wood, cozy, warm",
    "industrial": "industrial style, exposed brick, metal, raw",
    "tropical": "tropical, vibrant, plants, natural, bright",
    "bohemian": "bohemian, eclectic, colorful, artistic",
    "vintage": "vintage, retro, antique, nostalgic",
    "luxury": "luxury, opulent, premium, sophisticated",
}

TIER_OPTIONS: Dict[str, Dict[str, Any]] = {
    "standard": {"num_outputs": 2, "num_inference_steps": 30, "guidance_scale": 7.5},
    "premium": {"num_outputs": 4, "num_inference_steps": 50, "guidance_scale": 7.5},
}

TERMINAL_STATUSES = ("succeeded", "failed", "canceled")


def build_design_prompt(room_type: str, theme: str, custom_prompt: Optional[str] = None) -> str:
    room = ROOM_DESCRIPTIONS.get(room_type, room_type)
    style = THEME_MODIFIERS.get(theme, theme)
    custom = (custom_prompt or "").strip()
    if custom:
        return f"{room} in {style} style. {custom}. {POSITIVE_PROMPT}"
    return f"{room} in {style} style. {POSITIVE_PROMPT}"


@dataclass
class ProviderResult:
    prediction_id: Optional[str]
    status: str
    outputs: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded" and bool(self.outputs)


class ComputeProvider(Protocol):
    async def generate(self, *, image_url: str, prompt: str, tier: str) -> ProviderResult:
        ...


def _usable_outputs(output: Any) -> List[str]:
    if isinstance(output, str):
        output = [output]
    if not isinstance(output, list):
        return []
    return [item for item in output if isinstance(item, str) and item.strip()]


def _result_from_prediction(payload: Dict[str, Any]) -> ProviderResult:
    return ProviderResult(
        prediction_id=payload.get("id"),
        status=str(payload.get("status") or "unknown"),
        outputs=_usable_outputs(payload.get("output")),
        error=payload.get("error") or None,
    )


class ReplicateProvider:
    """Creates a prediction and polls it until it reaches a terminal status.

    No overall deadline is applied here; callers bound ``generate`` with
    ``asyncio.wait_for``.
    """

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        model_version: Optional[str] = None,
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or settings.REPLICATE_API_URL).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.REPLICATE_API_TOKEN
        self.model_version = model_version if model_version is not None else settings.REPLICATE_MODEL_VERSION
        self.poll_interval = max(
            float(settings.PROVIDER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval),
            0.0,
        )
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "Prefer": "wait",
        }

    async def generate(self, *, image_url: str, prompt: str, tier: str) -> ProviderResult:
        if not self.api_token or not self.model_version:
            raise RuntimeError("REPLICATE_API_TOKEN and REPLICATE_MODEL_VERSION must be configured")

        options = TIER_OPTIONS.get(tier, TIER_OPTIONS["standard"])
        body = {
            "version": self.model_version,
            "input": {
                "image": image_url,
                "prompt": prompt,
                "negative_prompt": NEGATIVE_PROMPT,
                **options,
            },
        }

        async with httpx.AsyncClient(
            base_url=self.api_url,
            headers=self._headers(),
            timeout=httpx.Timeout(60.0, connect=10.0),
            transport=self._transport,
        ) as client:
            response = await client.post("/predictions", json=body)
            response.raise_for_status()
            result = _result_from_prediction(response.json())
            logger.info(
                "Prediction created",
                extra={"prediction_id": result.prediction_id, "status": result.status, "tier": tier},
            )

            while result.status not in TERMINAL_STATUSES:
                await asyncio.sleep(self.poll_interval)
                response = await client.get(f"/predictions/{result.prediction_id}")
                response.raise_for_status()
                result = _result_from_prediction(response.json())

        return result
