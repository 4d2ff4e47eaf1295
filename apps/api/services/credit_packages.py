"""Static credit package catalogue sold through Stripe Checkout."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import List, Optional

import stripe

from config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price_cents: int
    stripe_price_id: str
    active: bool = True


def credit_packages() -> List[CreditPackage]:
    return [
        CreditPackage("starter", "Starter", 30, 999, settings.STRIPE_PRICE_STARTER),
        CreditPackage("growth", "Growth", 150, 1999, settings.STRIPE_PRICE_GROWTH),
        CreditPackage("premium", "Premium", 300, 2999, settings.STRIPE_PRICE_PREMIUM),
    ]


def get_credit_package(package_id: Optional[str]) -> Optional[CreditPackage]:
    if not package_id:
        return None
    for package in credit_packages():
        if package.id == package_id and package.active:
            return package
    return None


async def create_checkout_session(
    *,
    external_id: str,
    email: Optional[str],
    package: CreditPackage,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> stripe.checkout.Session:
    """Open a one-off payment session whose completion webhook credits ``package``.

    ``client_reference_id`` and ``metadata.userId`` carry the identity-provider
    user id; ``metadata.packageId`` carries the package the webhook will grant.
    """
    if not settings.STRIPE_SECRET_KEY or not package.stripe_price_id:
        raise RuntimeError("Stripe is not configured for checkout.")

    app_url = settings.APP_URL.rstrip("/")
    session = await stripe.checkout.Session.create_async(
        api_key=settings.STRIPE_SECRET_KEY,
        mode="payment",
        payment_method_types=["card"],
        allow_promotion_codes=True,
        line_items=[{"price": package.stripe_price_id, "quantity": 1}],
        success_url=success_url or f"{app_url}/pricing?success=true",
        cancel_url=cancel_url or f"{app_url}/pricing?success=false",
        client_reference_id=external_id,
        customer_email=email or None,
        metadata={"userId": external_id, "packageId": package.id},
    )
    logger.info(
        "Checkout session created",
        extra={"external_id": external_id, "package_id": package.id, "session_id": session.id},
    )
    return session
