import asyncio

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from conftest import checkout_event, stripe_signed, svix_signed, user_event
from models.credit_transaction import CreditTransaction
from models.webhook_event import WebhookEvent
from services.errors import AccountNotFound, MalformedEvent, Unauthorized
from services.ledger import create_account, get_account_by_external_id
from services.payment_webhook import handle_payment_webhook
from services.webhook_events import UserCreated


async def _purchases(session_maker):
    async with session_maker() as session:
        result = await session.execute(
            select(func.count()).select_from(CreditTransaction).where(CreditTransaction.kind == "purchase")
        )
        return result.scalar_one()


async def _claims(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(func.count()).select_from(WebhookEvent))
        return result.scalar_one()


async def _balance(session_maker, external_id):
    async with session_maker() as session:
        account = await get_account_by_external_id(session, external_id)
        return account.balance if account else None


async def _provision(session_maker, external_id="user_ext_1", balance=0):
    async with session_maker() as session:
        await create_account(session, external_id=external_id, email="buyer@example.com", initial_balance=balance)


@pytest.mark.asyncio
async def test_same_checkout_event_delivered_twice_credits_once(client, session_maker):
    await _provision(session_maker)
    body, signature = stripe_signed(checkout_event("evt_scenario_d"))

    first = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})
    second = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})

    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert await _balance(session_maker, "user_ext_1") == 30
    assert await _purchases(session_maker) == 1


@pytest.mark.asyncio
async def test_redelivery_n_times_yields_identical_success(client, session_maker):
    await _provision(session_maker)
    body, signature = stripe_signed(checkout_event("evt_many", package_id="growth"))

    responses = [
        await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})
        for _ in range(4)
    ]

    assert {response.status_code for response in responses} == {200}
    assert await _balance(session_maker, "user_ext_1") == 150
    assert await _purchases(session_maker) == 1


@pytest.mark.asyncio
async def test_concurrent_redeliveries_credit_once(session_maker):
    await _provision(session_maker)
    body, signature = stripe_signed(checkout_event("evt_parallel"))

    async def deliver():
        async with session_maker() as session:
            return await handle_payment_webhook(session, body, signature)

    outcomes = await asyncio.gather(*(deliver() for _ in range(5)))

    assert all(outcome.status_code == 200 for outcome in outcomes)
    assert sum(1 for outcome in outcomes if not outcome.duplicate) == 1
    assert await _balance(session_maker, "user_ext_1") == 30


@pytest.mark.asyncio
async def test_payment_before_identity_is_404_then_credits_after_create(client, session_maker):
    body, signature = stripe_signed(checkout_event("evt_early", subject="user_late"))

    early = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})
    assert early.status_code == 404
    assert early.json()["error"]["retryable"] is True
    assert await _purchases(session_maker) == 0

    identity_body, identity_headers = svix_signed(user_event("user.created", "user_late"), "msg_late")
    created = await client.post("/webhooks/clerk", content=identity_body, headers=identity_headers)
    assert created.status_code == 200

    retried = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})
    assert retried.status_code == 200
    assert retried.json()["duplicate"] is False
    assert await _purchases(session_maker) == 1
    # Starter credit from the identity webhook plus the starter package.
    assert await _balance(session_maker, "user_late") == 31


@pytest.mark.asyncio
async def test_unpaid_session_is_acknowledged_without_credit(client, session_maker):
    await _provision(session_maker)
    body, signature = stripe_signed(checkout_event("evt_unpaid", payment_status="unpaid"))

    response = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})

    assert response.status_code == 200
    assert response.json()["message"] == "Session not paid"
    assert await _balance(session_maker, "user_ext_1") == 0


@pytest.mark.asyncio
async def test_known_irrelevant_event_is_acknowledged(client):
    event = {"id": "evt_pi", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
    body, signature = stripe_signed(event)

    response = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})

    assert response.status_code == 200
    assert response.json()["message"] == "Event acknowledged"


@pytest.mark.asyncio
async def test_unknown_event_type_is_rejected_as_malformed(client):
    event = {"id": "evt_weird", "type": "invoice.exploded", "data": {"object": {}}}
    body, signature = stripe_signed(event)

    response = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MALFORMED_EVENT"


@pytest.mark.asyncio
async def test_missing_package_metadata_is_malformed_and_not_claimed(session_maker):
    await _provision(session_maker)
    body, signature = stripe_signed(checkout_event("evt_nopkg", package_id=None))

    async with session_maker() as session:
        with pytest.raises(MalformedEvent):
            await handle_payment_webhook(session, body, signature)

    assert await _purchases(session_maker) == 0
    assert await _claims(session_maker) == 0


@pytest.mark.asyncio
async def test_unknown_package_is_malformed(client, session_maker):
    await _provision(session_maker)
    body, signature = stripe_signed(checkout_event("evt_badpkg", package_id="platinum"))

    response = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})

    assert response.status_code == 400
    assert await _purchases(session_maker) == 0


@pytest.mark.asyncio
async def test_bad_signature_is_unauthorized(client, session_maker):
    await _provision(session_maker)
    body, signature = stripe_signed(checkout_event("evt_forged"), secret="whsec_wrong")

    response = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": signature})
    missing = await client.post("/webhooks/stripe", content=body)

    assert response.status_code == 401
    assert missing.status_code == 401
    assert await _balance(session_maker, "user_ext_1") == 0


@pytest.mark.asyncio
async def test_async_payment_succeeded_also_grants_credits(session_maker):
    await _provision(session_maker)
    body, signature = stripe_signed(
        checkout_event("evt_async", event_type="checkout.session.async_payment_succeeded", package_id="premium")
    )

    async with session_maker() as session:
        outcome = await handle_payment_webhook(session, body, signature)

    assert outcome.status_code == 200
    assert await _balance(session_maker, "user_ext_1") == 300


class StubIdentityProvider:
    def __init__(self, user):
        self.user = user
        self.calls = []

    async def fetch_user(self, external_id):
        self.calls.append(external_id)
        return self.user


@pytest.mark.asyncio
async def test_lazy_provisioning_creates_account_outside_production(session_maker, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "IDENTITY_LAZY_PROVISIONING", True)
    provider = StubIdentityProvider(UserCreated(external_id="user_lazy", email="lazy@example.com"))
    body, signature = stripe_signed(checkout_event("evt_lazy", subject="user_lazy"))

    async with session_maker() as session:
        outcome = await handle_payment_webhook(session, body, signature, identity_provider=provider)

    assert outcome.status_code == 200
    assert provider.calls == ["user_lazy"]
    assert await _balance(session_maker, "user_lazy") == 31


@pytest.mark.asyncio
async def test_lazy_provisioning_never_runs_in_production(session_maker, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "IDENTITY_LAZY_PROVISIONING", True)
    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    provider = StubIdentityProvider(UserCreated(external_id="user_prod", email="prod@example.com"))
    body, signature = stripe_signed(checkout_event("evt_prod", subject="user_prod"))

    async with session_maker() as session:
        with pytest.raises(AccountNotFound):
            await handle_payment_webhook(session, body, signature, identity_provider=provider)

    assert provider.calls == []
    assert await _balance(session_maker, "user_prod") is None


@pytest.mark.asyncio
async def test_handler_rejects_forged_payload_before_touching_store(session_maker):
    body, _ = stripe_signed(checkout_event("evt_store"))

    async with session_maker() as session:
        with pytest.raises(Unauthorized):
            await handle_payment_webhook(session, body, "t=1,v1=deadbeef")

    assert await _claims(session_maker) == 0
