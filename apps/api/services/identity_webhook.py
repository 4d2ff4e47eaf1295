"""Clerk identity lifecycle webhook handling (user.created / updated / deleted)."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.errors import AccountNotFound, MalformedEvent
from services.ledger import create_account, delete_account, get_account_by_external_id, update_identity
from services.webhook_dedup import IDENTITY_SOURCE, try_claim
from services.webhook_events import (
    AcknowledgedIdentityEvent,
    UserCreated,
    UserDeleted,
    UserUpdated,
    WebhookOutcome,
    parse_identity_event,
)
from services.webhook_signatures import verify_svix_webhook

logger = logging.getLogger(__name__)


async def _handle_created(db: AsyncSession, event: UserCreated, starter_credits: int) -> WebhookOutcome:
    if not event.email:
        raise MalformedEvent("No email found", context={"external_id": event.external_id})

    existing = await get_account_by_external_id(db, event.external_id, include_deleted=True)
    if existing:
        await db.commit()
        if existing.deleted_at is not None:
            logger.warning("Create event for a deleted account ignored", extra={"external_id": event.external_id})
            return WebhookOutcome(200, "Account was deleted")
        logger.info("User already exists, skipping creation", extra={"external_id": event.external_id})
        return WebhookOutcome(200, "User already exists")

    try:
        account = await create_account(
            db,
            external_id=event.external_id,
            email=event.email,
            initial_balance=starter_credits,
            name=event.name,
            avatar_url=event.avatar_url,
            commit=False,
        )
        await db.commit()
    except IntegrityError:
        # Lost a race against lazy provisioning for the same identity.
        await db.rollback()
        logger.info("User created concurrently, skipping creation", extra={"external_id": event.external_id})
        return WebhookOutcome(200, "User already exists")

    logger.info(
        "User created via webhook",
        extra={"external_id": event.external_id, "account_id": account.id, "starter_credits": starter_credits},
    )
    return WebhookOutcome(200, "User created successfully")


async def _handle_updated(db: AsyncSession, event: UserUpdated) -> WebhookOutcome:
    existing = await get_account_by_external_id(db, event.external_id, include_deleted=True)
    if existing is not None and existing.deleted_at is not None:
        await db.commit()
        logger.info("Update event for deleted account ignored", extra={"external_id": event.external_id})
        return WebhookOutcome(200, "Account was deleted")

    await update_identity(db, event.external_id, event.fields, commit=False)
    await db.commit()
    if event.fields:
        logger.info("User updated via webhook", extra={"external_id": event.external_id, "fields": sorted(event.fields)})
    else:
        logger.info("User update event with no changes to sync", extra={"external_id": event.external_id})
    return WebhookOutcome(200, "User updated successfully")


async def _handle_deleted(db: AsyncSession, event: UserDeleted) -> WebhookOutcome:
    existing = await get_account_by_external_id(db, event.external_id, include_deleted=True)
    if existing is not None and existing.deleted_at is not None:
        await db.commit()
        return WebhookOutcome(200, "User already deleted")
    if existing is None:
        logger.warning("Delete event for unknown account", extra={"external_id": event.external_id})
        raise AccountNotFound("User not found", context={"external_id": event.external_id})

    await delete_account(db, event.external_id, commit=False)
    await db.commit()
    logger.info("User deleted via webhook", extra={"external_id": event.external_id})
    return WebhookOutcome(200, "User deleted successfully")


async def handle_identity_webhook(
    db: AsyncSession,
    payload: bytes,
    headers: Mapping[str, str],
    *,
    secret: Optional[str] = None,
    starter_credits: Optional[int] = None,
) -> WebhookOutcome:
    """Process one identity event delivery under the same claim discipline as payments."""
    raw = verify_svix_webhook(
        payload,
        headers,
        secret if secret is not None else settings.CLERK_WEBHOOK_SECRET,
        tolerance=settings.CLERK_WEBHOOK_TOLERANCE_SECONDS,
    )
    event_id = headers.get("svix-id") or ""
    grant = max(int(settings.STARTER_CREDITS if starter_credits is None else starter_credits), 0)

    try:
        claimed = await try_claim(db, IDENTITY_SOURCE, event_id, event_type=raw.get("type"), commit=False)
        if not claimed:
            await db.rollback()
            logger.info("Duplicate identity webhook, skipping", extra={"event_id": event_id})
            return WebhookOutcome(200, "Webhook already processed", duplicate=True)

        event = parse_identity_event(raw)
        if isinstance(event, AcknowledgedIdentityEvent):
            await db.commit()
            return WebhookOutcome(200, "Event acknowledged")
        if isinstance(event, UserCreated):
            return await _handle_created(db, event, grant)
        if isinstance(event, UserUpdated):
            return await _handle_updated(db, event)
        return await _handle_deleted(db, event)
    except Exception:
        await db.rollback()
        raise
