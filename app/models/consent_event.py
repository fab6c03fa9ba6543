import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .base import Base
from .customer import ConsentStatus


class ConsentEventType(str, enum.Enum):
    CHECKOUT_TOGGLE = "checkout_toggle"
    CHECKOUT_COMPLETED = "checkout_completed"
    PLATFORM_CONSENT_UPDATE = "platform_consent_update"
    PROFILE_UPDATE = "profile_update"
    BULK_SYNC = "bulk_sync"


class ConsentEvent(Base):
    """Append-only audit trail. Rows are never updated except to backfill customer_id."""
    __tablename__ = "consent_events"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(50), nullable=False, index=True)
    status = Column(Enum(ConsentStatus, name="consentstatus"), nullable=True)
    region = Column(String(8), nullable=True)
    note = Column(JSONB().with_variant(JSON, "sqlite"), nullable=False, default=dict)

    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    session_id = Column(String(36), ForeignKey("checkout_sessions.id", ondelete="CASCADE"), nullable=True)

    # Client-reported time of the signal; (session_id, type, occurred_at) dedupes storefront retries
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    customer = relationship("CustomerConsentRecord", back_populates="events")
    session = relationship("CheckoutSession", back_populates="events")

    __table_args__ = (
        Index("ix_consent_events_customer_created", "customer_id", "created_at"),
        Index("ix_consent_events_session_created", "session_id", "created_at"),
    )
