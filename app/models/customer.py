"""
Current marketing-consent state per (shop, customer identity).

Identity is the union of the platform's numeric customer id and the email
address; either may be missing but at least one is always set. The fence
columns hold the state we just pushed to the platform so its echo webhook
can be recognised and dropped.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .base import Base


class ConsentStatus(str, enum.Enum):
    SUBSCRIBED = "SUBSCRIBED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    NOT_SUBSCRIBED = "NOT_SUBSCRIBED"


class CustomerConsentRecord(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    shop = Column(String(255), nullable=False, index=True)
    platform_customer_id = Column(String(64), nullable=True)
    email = Column(String(255), nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)

    status = Column(Enum(ConsentStatus, name="consentstatus"), nullable=True)
    last_consent_at = Column(DateTime(timezone=True), nullable=True)
    last_consent_source = Column(String(50), nullable=True)
    last_mode = Column(String(20), nullable=True)
    last_region = Column(String(8), nullable=True)

    # Suppression fence (best-effort; losing it costs one redundant no-op sync)
    fence_until = Column(DateTime(timezone=True), nullable=True)
    fence_state = Column(Enum(ConsentStatus, name="consentstatus"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    events = relationship("ConsentEvent", back_populates="customer")
    sessions = relationship("CheckoutSession", back_populates="customer")

    __table_args__ = (
        UniqueConstraint("shop", "platform_customer_id", name="uq_customers_shop_platform_id"),
        UniqueConstraint("shop", "email", name="uq_customers_shop_email"),
    )
