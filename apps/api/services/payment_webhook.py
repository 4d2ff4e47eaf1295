"""Stripe payment webhook handling: verify, claim, resolve, credit."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.credit_packages import get_credit_package
from services.errors import AccountNotFound, DuplicateTransaction, MalformedEvent
from services.identity import IdentityProvider, resolve_account_for_payment
from services.ledger import adjust_balance, find_by_external_payment_ref
from services.webhook_dedup import PAYMENT_SOURCE, try_claim
from services.webhook_events import (
    AcknowledgedPaymentEvent,
    CheckoutUnpaid,
    WebhookOutcome,
    parse_payment_event,
)
from services.webhook_signatures import verify_stripe_event

logger = logging.getLogger(__name__)


async def handle_payment_webhook(
    db: AsyncSession,
    payload: bytes,
    signature_header: Optional[str],
    *,
    secret: Optional[str] = None,
    identity_provider: Optional[IdentityProvider] = None,
) -> WebhookOutcome:
    """Process one payment event delivery.

    The dedup claim, the balance credit and the ledger row are written in one
    database transaction. Any failure rolls all three back so the upstream
    redelivery starts from a clean slate.
    """
    raw = verify_stripe_event(
        payload,
        signature_header,
        secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )
    event_id = str(raw.get("id") or "").strip()
    if not event_id:
        raise MalformedEvent("Payment event is missing id")

    try:
        claimed = await try_claim(db, PAYMENT_SOURCE, event_id, event_type=raw.get("type"), commit=False)
        if not claimed:
            await db.rollback()
            logger.info("Duplicate payment webhook, skipping", extra={"event_id": event_id})
            return WebhookOutcome(200, "Webhook already processed", duplicate=True)

        event = parse_payment_event(raw)
        if isinstance(event, AcknowledgedPaymentEvent):
            await db.commit()
            logger.info("Payment event acknowledged", extra={"event_id": event_id, "event_type": event.event_type})
            return WebhookOutcome(200, "Event acknowledged")
        if isinstance(event, CheckoutUnpaid):
            await db.commit()
            logger.warning(
                "Checkout session completed but not paid; skipping credit grant",
                extra={"event_id": event_id, "payment_status": event.payment_status, "session_id": event.session_id},
            )
            return WebhookOutcome(200, "Session not paid")

        if not event.subject or not event.package_id:
            raise MalformedEvent(
                "Missing subject or package in checkout metadata",
                context={"event_id": event_id, "session_id": event.session_id},
            )

        account = await resolve_account_for_payment(
            db,
            event.subject,
            identity_provider=identity_provider,
            commit=False,
        )
        if not account:
            raise AccountNotFound(
                "Account not provisioned yet",
                context={"event_id": event_id, "external_id": event.subject},
            )

        package = get_credit_package(event.package_id)
        if not package:
            raise MalformedEvent(
                f"Unknown credit package: {event.package_id}",
                context={"event_id": event_id},
            )

        if await find_by_external_payment_ref(db, event_id):
            await db.commit()
            logger.info("Purchase already credited", extra={"event_id": event_id})
            return WebhookOutcome(200, "Webhook already processed", duplicate=True)

        await adjust_balance(
            db,
            account.id,
            package.credits,
            kind="purchase",
            external_payment_ref=event_id,
            metadata={
                "package_id": package.id,
                "package_name": package.name,
                "session_id": event.session_id,
                "payment_intent": event.payment_intent,
            },
            commit=False,
        )
        await db.commit()
    except DuplicateTransaction:
        await db.rollback()
        logger.info("Purchase credited by a concurrent delivery", extra={"event_id": event_id})
        return WebhookOutcome(200, "Webhook already processed", duplicate=True)
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Credits added from checkout",
        extra={"event_id": event_id, "account_id": account.id, "package_id": package.id, "credits": package.credits},
    )
    return WebhookOutcome(200, "Webhook processed")
