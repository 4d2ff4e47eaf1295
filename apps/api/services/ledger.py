"""Account store and append-only credit transaction log.

``adjust_balance`` is the only mutation path for ``Account.balance``: it applies
the delta with a single conditional UPDATE (no read-then-write) and records the
matching ledger row in the same database transaction.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging
import uuid

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_transaction import TRANSACTION_KINDS, CreditTransaction
from services.errors import AccountNotFound, DuplicateTransaction, InsufficientBalance

logger = logging.getLogger(__name__)

_CREDITING_KINDS = ("purchase", "bonus", "refund")


async def get_account(db: AsyncSession, account_id: str) -> Optional[Account]:
    result = await db.execute(
        select(Account).where(Account.id == account_id, Account.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def get_account_by_external_id(
    db: AsyncSession,
    external_id: str,
    *,
    include_deleted: bool = False,
) -> Optional[Account]:
    if not external_id:
        return None
    query = select(Account).where(Account.external_id == external_id)
    if not include_deleted:
        query = query.where(Account.deleted_at.is_(None))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def create_account(
    db: AsyncSession,
    *,
    external_id: Optional[str],
    email: str,
    initial_balance: int = 0,
    name: Optional[str] = None,
    avatar_url: Optional[str] = None,
    commit: bool = True,
) -> Account:
    """Insert an account at zero and grant ``initial_balance`` as a ``bonus`` row.

    The starting balance goes through ``adjust_balance`` so the balance always
    equals the sum of the account's transactions.
    """
    account = Account(
        id=str(uuid.uuid4()),
        external_id=external_id,
        email=email,
        name=name,
        avatar_url=avatar_url,
        balance=0,
    )
    db.add(account)
    await db.flush()

    grant = max(int(initial_balance), 0)
    if grant > 0:
        return await adjust_balance(
            db,
            account.id,
            grant,
            kind="bonus",
            metadata={"reason": "starter_credits"},
            commit=commit,
        )

    if commit:
        await db.commit()
    return account


async def record_transaction(
    db: AsyncSession,
    *,
    account_id: str,
    kind: str,
    amount: int,
    balance_after: int,
    external_payment_ref: Optional[str] = None,
    generation_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Append a ledger row inside the caller's unit of work and return its id.

    Only ``adjust_balance`` calls this; a row recorded on its own would break
    the balance/ledger equality.
    """
    entry = CreditTransaction(
        id=str(uuid.uuid4()),
        account_id=account_id,
        kind=kind,
        amount=int(amount),
        balance_after=int(balance_after),
        external_payment_ref=external_payment_ref,
        generation_id=generation_id,
        metadata_json=metadata or None,
    )
    db.add(entry)
    await db.flush()
    return entry.id


def _validate_delta(kind: str, delta: int) -> None:
    if kind not in TRANSACTION_KINDS:
        raise ValueError(f"Unknown transaction kind: {kind}")
    if delta == 0:
        raise ValueError("delta must be non-zero")
    if kind == "usage" and delta > 0:
        raise ValueError("usage transactions must debit credits")
    if kind in _CREDITING_KINDS and delta < 0:
        raise ValueError(f"{kind} transactions must credit the account")


async def adjust_balance(
    db: AsyncSession,
    account_id: str,
    delta: int,
    *,
    kind: str,
    external_payment_ref: Optional[str] = None,
    generation_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> Account:
    """Apply ``delta`` to the balance and record the transaction as one unit.

    Usage debits are rejected with ``InsufficientBalance`` when they would take
    the balance below zero. Purchases, bonuses and refunds are never rejected on
    balance grounds. A rejected adjustment is undone on its own savepoint, so the
    caller's transaction and loaded objects stay usable. With ``commit=False``
    the caller owns the transaction and must commit or roll back.
    """
    delta = int(delta)
    _validate_delta(kind, delta)

    stmt = (
        update(Account)
        .where(Account.id == account_id, Account.deleted_at.is_(None))
        .values(balance=Account.balance + delta)
        .returning(Account.balance)
        .execution_options(synchronize_session=False)
    )
    if kind == "usage":
        stmt = stmt.where(Account.balance + delta >= 0)

    try:
        async with db.begin_nested():
            result = await db.execute(stmt)
            result_row = result.first()
            if result_row is None:
                exists = await db.execute(
                    select(Account.id).where(Account.id == account_id, Account.deleted_at.is_(None))
                )
                if exists.scalar_one_or_none() is None:
                    raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})
                raise InsufficientBalance(
                    f"Insufficient credits. Required: {-delta}.",
                    context={"account_id": account_id, "required": -delta},
                )

            await record_transaction(
                db,
                account_id=account_id,
                kind=kind,
                amount=delta,
                balance_after=int(result_row[0]),
                external_payment_ref=external_payment_ref,
                generation_id=generation_id,
                metadata=metadata,
            )
    except IntegrityError as exc:
        raise DuplicateTransaction(
            "A matching ledger entry already exists",
            context={
                "account_id": account_id,
                "kind": kind,
                "external_payment_ref": external_payment_ref,
                "generation_id": generation_id,
            },
        ) from exc

    balance_after = int(result_row[0])
    if commit:
        await db.commit()

    logger.info(
        "Balance adjusted",
        extra={"account_id": account_id, "kind": kind, "delta": delta, "balance_after": balance_after},
    )
    account = await db.get(Account, account_id, populate_existing=True)
    return account


async def find_by_external_payment_ref(db: AsyncSession, ref: str) -> Optional[CreditTransaction]:
    if not ref:
        return None
    result = await db.execute(
        select(CreditTransaction).where(CreditTransaction.external_payment_ref == ref)
    )
    return result.scalar_one_or_none()


async def find_refund_for(db: AsyncSession, generation_id: str) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.generation_id == generation_id,
            CreditTransaction.kind == "refund",
        )
    )
    return result.scalar_one_or_none()


async def update_identity(
    db: AsyncSession,
    external_id: str,
    fields: Dict[str, Any],
    *,
    commit: bool = True,
) -> Account:
    """Patch email/name/avatar on the account for ``external_id``."""
    account = await get_account_by_external_id(db, external_id)
    if not account:
        raise AccountNotFound(
            f"No account for external id {external_id}",
            context={"external_id": external_id},
        )

    for key in ("email", "name", "avatar_url"):
        value = fields.get(key)
        if value:
            setattr(account, key, value)
    await db.flush()
    if commit:
        await db.commit()
    return account


async def delete_account(db: AsyncSession, external_id: str, *, commit: bool = True) -> Account:
    """Terminally close the account. The ledger rows stay; no new ones can target it."""
    account = await get_account_by_external_id(db, external_id)
    if not account:
        raise AccountNotFound(
            f"No account for external id {external_id}",
            context={"external_id": external_id},
        )
    account.deleted_at = datetime.now(timezone.utc)
    await db.flush()
    if commit:
        await db.commit()
    return account


async def ledger_balance(db: AsyncSession, account_id: str) -> int:
    """Sum of every signed transaction amount for the account."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.account_id == account_id
        )
    )
    return int(result.scalar() or 0)


async def has_purchase(db: AsyncSession, account_id: str) -> bool:
    result = await db.execute(
        select(CreditTransaction.id)
        .where(CreditTransaction.account_id == account_id, CreditTransaction.kind == "purchase")
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_transactions(db: AsyncSession, account_id: str, *, limit: int = 30) -> List[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_credit_summary(db: AsyncSession, account: Account) -> Dict[str, Any]:
    derived = await ledger_balance(db, account.id)
    entries = await list_transactions(db, account.id)
    return {
        "account_id": account.id,
        "balance": account.balance,
        "ledger_balance": derived,
        "consistent": derived == account.balance,
        "costs": {
            "standard": max(int(settings.CREDIT_COST_STANDARD), 1),
            "premium": max(int(settings.CREDIT_COST_PREMIUM), 1),
        },
        "recent_entries": [
            {
                "id": entry.id,
                "kind": entry.kind,
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "external_payment_ref": entry.external_payment_ref,
                "generation_id": entry.generation_id,
                "metadata": entry.metadata_json,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
