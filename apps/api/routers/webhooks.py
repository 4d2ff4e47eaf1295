"""Inbound webhook endpoints for the payment processor and identity provider.

Every outcome maps to a status code: upstream retry behaviour depends on it.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.errors import LedgerError, Unauthorized
from services.identity import IdentityProvider
from services.identity_webhook import handle_identity_webhook
from services.payment_webhook import handle_payment_webhook
from services.webhook_events import WebhookOutcome

router = APIRouter()
logger = logging.getLogger(__name__)


def get_identity_provider(request: Request) -> Optional[IdentityProvider]:
    return getattr(request.app.state, "identity_provider", None)


async def _respond(source: str, pending: Awaitable[WebhookOutcome]) -> JSONResponse:
    try:
        outcome = await pending
    except Unauthorized as exc:
        logger.warning("Webhook signature rejected", extra={"source": source, "reason": exc.message})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})
    except LedgerError as exc:
        logger.info(
            "Webhook not processed",
            extra={"source": source, "code": exc.code, "status_code": exc.status_code, "reason": exc.message},
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})
    except Exception:
        logger.error("Webhook processing failed", extra={"source": source}, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "Webhook processing failed", "retryable": True}},
        )

    return JSONResponse(
        status_code=outcome.status_code,
        content={"received": True, "message": outcome.message, "duplicate": outcome.duplicate},
    )


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity_provider: Optional[IdentityProvider] = Depends(get_identity_provider),
):
    payload = await request.body()
    return await _respond(
        "stripe",
        handle_payment_webhook(
            db,
            payload,
            request.headers.get("stripe-signature"),
            identity_provider=identity_provider,
        ),
    )


@router.post("/clerk")
async def clerk_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    return await _respond("clerk", handle_identity_webhook(db, payload, request.headers))
