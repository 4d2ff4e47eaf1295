"""CreditTransaction model for the append-only credit ledger."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_KINDS = ("purchase", "usage", "bonus", "refund")


class CreditTransaction(Base):
    """Immutable credit ledger entry. Corrections are new offsetting rows."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("generation_id", "kind", name="uq_credit_transactions_generation_kind"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    external_payment_ref = Column(String, nullable=True, unique=True, index=True)
    generation_id = Column(String, nullable=True, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="transactions")
