"""Typed views over loosely-structured webhook payloads.

Each parser maps a raw event onto one known kind. Event types that are known
but irrelevant to the ledger come back as an ``Acknowledged*`` kind; types that
are not known at all raise ``MalformedEvent``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from services.errors import MalformedEvent


CREDIT_GRANTING_PAYMENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    }
)
ACKNOWLEDGED_PAYMENT_TYPES = frozenset(
    {
        "checkout.session.expired",
        "checkout.session.async_payment_failed",
        "payment_intent.created",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "charge.succeeded",
        "charge.failed",
        "charge.updated",
    }
)
PAID_STATUSES = frozenset({"paid", "no_payment_required"})

ACKNOWLEDGED_IDENTITY_TYPES = frozenset(
    {
        "session.created",
        "session.ended",
        "session.removed",
        "session.revoked",
        "email.created",
    }
)


@dataclass
class CheckoutPaid:
    event_id: str
    event_type: str
    session_id: Optional[str]
    subject: Optional[str]
    package_id: Optional[str]
    payment_status: str
    payment_intent: Optional[str] = None


@dataclass
class CheckoutUnpaid:
    event_id: str
    event_type: str
    session_id: Optional[str]
    payment_status: str


@dataclass
class AcknowledgedPaymentEvent:
    event_id: str
    event_type: str


PaymentEvent = Union[CheckoutPaid, CheckoutUnpaid, AcknowledgedPaymentEvent]


@dataclass
class UserCreated:
    external_id: str
    email: Optional[str]
    name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class UserUpdated:
    external_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UserDeleted:
    external_id: str


@dataclass
class AcknowledgedIdentityEvent:
    event_type: str


IdentityEvent = Union[UserCreated, UserUpdated, UserDeleted, AcknowledgedIdentityEvent]


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_payment_event(raw: Dict[str, Any]) -> PaymentEvent:
    event_id = _text(raw.get("id"))
    event_type = _text(raw.get("type"))
    if not event_id or not event_type:
        raise MalformedEvent("Payment event is missing id or type")

    if event_type in ACKNOWLEDGED_PAYMENT_TYPES:
        return AcknowledgedPaymentEvent(event_id=event_id, event_type=event_type)
    if event_type not in CREDIT_GRANTING_PAYMENT_TYPES:
        raise MalformedEvent(f"Unrecognized payment event type: {event_type}")

    session = _as_dict(_as_dict(raw.get("data")).get("object"))
    payment_status = _text(session.get("payment_status")) or "unpaid"
    session_id = _text(session.get("id"))
    if payment_status not in PAID_STATUSES:
        return CheckoutUnpaid(
            event_id=event_id,
            event_type=event_type,
            session_id=session_id,
            payment_status=payment_status,
        )

    metadata = _as_dict(session.get("metadata"))
    payment_intent = session.get("payment_intent")
    return CheckoutPaid(
        event_id=event_id,
        event_type=event_type,
        session_id=session_id,
        subject=_text(session.get("client_reference_id")) or _text(metadata.get("userId")),
        package_id=_text(metadata.get("packageId")),
        payment_status=payment_status,
        payment_intent=payment_intent if isinstance(payment_intent, str) else None,
    )


def _primary_email(data: Dict[str, Any]) -> Optional[str]:
    addresses = data.get("email_addresses")
    if not isinstance(addresses, list) or not addresses:
        return None
    primary_id = data.get("primary_email_address_id")
    for entry in addresses:
        entry = _as_dict(entry)
        if primary_id and entry.get("id") == primary_id:
            return _text(entry.get("email_address"))
    return _text(_as_dict(addresses[0]).get("email_address"))


def _full_name(data: Dict[str, Any]) -> Optional[str]:
    parts = [_text(data.get("first_name")), _text(data.get("last_name"))]
    joined = " ".join(part for part in parts if part)
    return joined or None


def parse_identity_event(raw: Dict[str, Any]) -> IdentityEvent:
    event_type = _text(raw.get("type"))
    if not event_type:
        raise MalformedEvent("Identity event is missing type")
    if event_type in ACKNOWLEDGED_IDENTITY_TYPES:
        return AcknowledgedIdentityEvent(event_type=event_type)
    if event_type not in ("user.created", "user.updated", "user.deleted"):
        raise MalformedEvent(f"Unrecognized identity event type: {event_type}")

    data = _as_dict(raw.get("data"))
    external_id = _text(data.get("id"))
    if not external_id:
        raise MalformedEvent(f"{event_type} event is missing data.id")

    if event_type == "user.deleted":
        return UserDeleted(external_id=external_id)

    email = _primary_email(data)
    name = _full_name(data)
    avatar_url = _text(data.get("image_url"))
    if event_type == "user.created":
        return UserCreated(external_id=external_id, email=email, name=name, avatar_url=avatar_url)

    fields = {
        key: value
        for key, value in (("email", email), ("name", name), ("avatar_url", avatar_url))
        if value
    }
    return UserUpdated(external_id=external_id, fields=fields)


@dataclass
class WebhookOutcome:
    """What a webhook handler answers upstream; status drives upstream retries."""

    status_code: int
    message: str
    duplicate: bool = False
