"""Generation model."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


GENERATION_IN_FLIGHT_STATUSES = ("pending", "processing")


class Generation(Base):
    """One paid unit of work sent to the compute provider."""

    __tablename__ = "generations"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    tier = Column(String, nullable=False)
    cost = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    prediction_id = Column(String, nullable=True, index=True)
    image_url = Column(String, nullable=True)
    prompt = Column(String, nullable=True)
    output_urls = Column(JSON, nullable=True)
    error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="generations")
