"""Resolve payment subjects to local accounts.

In production the identity webhook is the only way accounts are created. Outside
production, ``IDENTITY_LAZY_PROVISIONING`` lets a payment that beat the
identity-create webhook look the user up at the identity provider directly.

Interactive callers sign in with the identity provider; their session JWT is
verified here and exchanged for a ledger session token.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Protocol

import httpx
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from config import is_production, settings
from models.account import Account
from services.errors import Unauthorized
from services.ledger import create_account, get_account_by_external_id
from services.webhook_events import UserCreated, parse_identity_event

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    async def fetch_user(self, external_id: str) -> Optional[UserCreated]:
        ...


class ClerkIdentityProvider:
    """Minimal Clerk Backend API client (``GET /users/{id}``)."""

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or settings.CLERK_API_URL).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.CLERK_SECRET_KEY
        self.timeout = timeout
        self._transport = transport

    async def fetch_user(self, external_id: str) -> Optional[UserCreated]:
        if not self.secret_key:
            raise RuntimeError("CLERK_SECRET_KEY is not configured")
        async with httpx.AsyncClient(
            base_url=self.api_url,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            response = await client.get(f"/users/{external_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        event = parse_identity_event({"type": "user.created", "data": response.json()})
        return event if isinstance(event, UserCreated) else None


class ClerkSessionVerifier:
    """Verify identity-provider session JWTs (RS256) against the provider's JWKS.

    The key set is fetched lazily and cached; an unknown signing key triggers one
    refetch so rotated keys are picked up without a restart.
    """

    algorithms = ["RS256"]

    def __init__(
        self,
        *,
        jwks_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        issuer: Optional[str] = None,
        jwks: Optional[Dict[str, Any]] = None,
        cache_seconds: Optional[int] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.jwks_url = jwks_url or settings.CLERK_JWKS_URL or f"{settings.CLERK_API_URL.rstrip('/')}/jwks"
        self.secret_key = secret_key if secret_key is not None else settings.CLERK_SECRET_KEY
        self.issuer = (issuer if issuer is not None else settings.CLERK_SESSION_ISSUER) or None
        self.cache_seconds = int(settings.CLERK_JWKS_CACHE_SECONDS if cache_seconds is None else cache_seconds)
        self.timeout = timeout
        self._transport = transport
        self._jwks = jwks
        self._fetched_at = time.monotonic() if jwks is not None else 0.0
        self._static = jwks is not None

    async def _fetch_jwks(self) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.secret_key}"} if self.secret_key else {}
        async with httpx.AsyncClient(headers=headers, timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(self.jwks_url)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict) or not isinstance(payload.get("keys"), list):
            raise Unauthorized("Identity provider returned an invalid key set.")
        return payload

    async def _keys(self, *, refresh: bool = False) -> Dict[str, Any]:
        if self._static:
            return self._jwks
        stale = time.monotonic() - self._fetched_at > self.cache_seconds
        if refresh or self._jwks is None or stale:
            try:
                self._jwks = await self._fetch_jwks()
            except httpx.HTTPError as exc:
                logger.warning("Identity JWKS fetch failed", extra={"error": str(exc)})
                raise Unauthorized("Identity session cannot be verified right now.") from exc
            self._fetched_at = time.monotonic()
        return self._jwks

    def _decode(self, token: str, keys: Dict[str, Any]) -> Dict[str, Any]:
        return jwt.decode(
            token,
            keys,
            algorithms=self.algorithms,
            issuer=self.issuer,
            options={"verify_aud": False},
        )

    async def verify(self, token: str) -> Dict[str, Any]:
        """Return the session claims, or raise ``Unauthorized``."""
        if not token:
            raise Unauthorized("Missing identity session token.")
        try:
            claims = self._decode(token, await self._keys())
        except JWTError as exc:
            if self._static:
                raise Unauthorized("Invalid identity session token.") from exc
            try:
                claims = self._decode(token, await self._keys(refresh=True))
            except JWTError as retry_exc:
                raise Unauthorized("Invalid identity session token.") from retry_exc
        if not claims.get("sub"):
            raise Unauthorized("Identity session token has no subject.")
        return claims


def lazy_provisioning_enabled() -> bool:
    return bool(settings.IDENTITY_LAZY_PROVISIONING) and not is_production()


async def resolve_account_for_payment(
    db: AsyncSession,
    external_ref: str,
    *,
    identity_provider: Optional[IdentityProvider] = None,
    lazy: Optional[bool] = None,
    commit: bool = True,
) -> Optional[Account]:
    """Return the account for ``external_ref`` or None when it cannot be resolved yet."""
    account = await get_account_by_external_id(db, external_ref, include_deleted=True)
    if account:
        return account if account.deleted_at is None else None

    allow_lazy = lazy_provisioning_enabled() if lazy is None else (lazy and not is_production())
    if not allow_lazy:
        return None

    provider = identity_provider or ClerkIdentityProvider()
    try:
        user = await provider.fetch_user(external_ref)
    except httpx.HTTPError as exc:
        logger.warning(
            "Identity provider lookup failed",
            extra={"external_id": external_ref, "error": str(exc)},
        )
        return None
    if user is None or not user.email:
        logger.info("Identity provider has no usable user", extra={"external_id": external_ref})
        return None

    account = await create_account(
        db,
        external_id=user.external_id,
        email=user.email,
        initial_balance=settings.STARTER_CREDITS,
        name=user.name,
        avatar_url=user.avatar_url,
        commit=commit,
    )
    logger.info(
        "Account lazily provisioned from identity provider",
        extra={"external_id": external_ref, "account_id": account.id},
    )
    return account
