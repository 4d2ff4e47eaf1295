"""Authenticity checks for inbound payment and identity webhooks."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

import stripe

from services.errors import MalformedEvent, Unauthorized

logger = logging.getLogger(__name__)

SVIX_SECRET_PREFIX = "whsec_"


def _decode_json(payload: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedEvent("Webhook body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedEvent("Webhook body must be a JSON object")
    return data


def verify_stripe_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    *,
    tolerance: int = 300,
) -> Dict[str, Any]:
    """Verify the ``Stripe-Signature`` header and return the decoded event body."""
    if not secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")
    if not signature_header:
        logger.warning("Missing Stripe signature header")
        raise Unauthorized("Missing signature")

    try:
        stripe.Webhook.construct_event(payload, signature_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed", extra={"error": str(exc)})
        raise Unauthorized("Invalid signature") from exc
    except ValueError as exc:
        raise MalformedEvent("Invalid payload") from exc

    return _decode_json(payload)


def _svix_key(secret: str) -> bytes:
    raw = secret[len(SVIX_SECRET_PREFIX):] if secret.startswith(SVIX_SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError) as exc:
        raise RuntimeError("CLERK_WEBHOOK_SECRET is not a valid svix secret") from exc


def sign_svix_payload(secret: str, msg_id: str, timestamp: str, payload: bytes) -> str:
    """Base64 HMAC-SHA256 over ``{id}.{timestamp}.{body}``."""
    signed = f"{msg_id}.{timestamp}.".encode() + payload
    digest = hmac.new(_svix_key(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_svix_webhook(
    payload: bytes,
    headers: Mapping[str, str],
    secret: str,
    *,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Verify svix-id/svix-timestamp/svix-signature headers and return the body."""
    if not secret:
        raise RuntimeError("CLERK_WEBHOOK_SECRET is not configured")

    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signature_header = headers.get("svix-signature")
    if not msg_id or not timestamp or not signature_header:
        logger.warning("Missing svix headers in identity webhook")
        raise MalformedEvent("Missing svix headers")

    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise MalformedEvent("Invalid svix timestamp") from exc

    current = int(now if now is not None else time.time())
    if abs(current - sent_at) > tolerance:
        logger.warning("Identity webhook timestamp outside tolerance", extra={"svix_id": msg_id})
        raise Unauthorized("Webhook timestamp outside tolerance")

    expected = sign_svix_payload(secret, msg_id, timestamp, payload)
    for candidate in signature_header.split():
        version, _, signature = candidate.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            return _decode_json(payload)

    logger.warning("Identity webhook signature verification failed", extra={"svix_id": msg_id})
    raise Unauthorized("Webhook verification failed")
