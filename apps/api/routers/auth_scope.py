"""Authentication dependencies for API account scoping."""

from dataclasses import dataclass
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.account import Account
from services.errors import AccountNotFound, Unauthorized
from services.ledger import get_account_by_external_id
from services.session_token import decode_session_token

logger = logging.getLogger(__name__)

auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    external_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the identity-provider user id from the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise Unauthorized(str(exc)) from exc

    return AuthContext(
        external_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """The caller's live account; 404 while the identity webhook has not provisioned it."""
    account = await get_account_by_external_id(db, auth.external_id)
    if not account:
        raise AccountNotFound("Account not provisioned yet.", context={"external_id": auth.external_id})
    return account


async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    expected = (settings.ADMIN_API_KEY or "").strip()
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        logger.warning("Rejected admin request", extra={"key_supplied": bool(x_admin_key)})
        raise Unauthorized("Invalid admin key.")
