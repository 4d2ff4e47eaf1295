"""
Authentication router: exchange an identity-provider session for a ledger session token.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from routers.auth_scope import AuthContext, get_auth_context, get_current_account
from routers.rate_limit import rate_limit
from services.errors import AccountNotFound
from services.identity import ClerkSessionVerifier
from services.ledger import get_account_by_external_id
from services.session_token import create_session_token

router = APIRouter()


class SessionExchangeRequest(BaseModel):
    identity_token: str = Field(min_length=1)


class SessionExchangeResponse(BaseModel):
    account_id: str
    external_id: str
    email: str
    balance: int
    session_token: str
    session_expires_at: int


class CurrentAccountResponse(BaseModel):
    account_id: str
    external_id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    balance: int


def get_session_verifier(request: Request) -> ClerkSessionVerifier:
    verifier = getattr(request.app.state, "session_verifier", None)
    if verifier is None:
        verifier = ClerkSessionVerifier()
        request.app.state.session_verifier = verifier
    return verifier


@router.post("/session", response_model=SessionExchangeResponse)
async def exchange_session(
    request: SessionExchangeRequest,
    verifier: ClerkSessionVerifier = Depends(get_session_verifier),
    db: AsyncSession = Depends(get_db),
    _rate_limit: None = Depends(rate_limit("auth_session", limit=60)),
):
    """Verify the identity-provider session JWT and issue a ledger session token."""
    claims = await verifier.verify(request.identity_token)
    external_id = str(claims["sub"])

    account = await get_account_by_external_id(db, external_id)
    if not account:
        raise AccountNotFound("Account not provisioned yet.", context={"external_id": external_id})

    session = create_session_token(account.external_id, account.email)
    return SessionExchangeResponse(
        account_id=account.id,
        external_id=account.external_id,
        email=account.email,
        balance=int(account.balance),
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me", response_model=CurrentAccountResponse)
async def get_me(account: Account = Depends(get_current_account)):
    return CurrentAccountResponse(
        account_id=account.id,
        external_id=account.external_id,
        email=account.email,
        name=account.name,
        avatar_url=account.avatar_url,
        balance=int(account.balance),
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
