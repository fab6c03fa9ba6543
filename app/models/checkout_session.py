"""
One row per storefront checkout attempt.

intended_status is provisional (last toggle seen); resolved_subscribed is only
set once the order webhook confirms the outcome. They are never merged.
"""
import enum
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .base import Base
from .customer import ConsentStatus


class PresentationMode(str, enum.Enum):
    OPT_IN = "OPT_IN"
    OPT_OUT = "OPT_OUT"
    NO_CHECKBOX = "NO_CHECKBOX"


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id = Column(String(36), primary_key=True)
    shop = Column(String(255), nullable=False)
    checkout_token = Column(String(255), unique=True, nullable=True)

    mode = Column(Enum(PresentationMode, name="presentationmode"), nullable=False)
    region = Column(String(8), nullable=True)
    ip_region = Column(String(8), nullable=True)
    billing_region = Column(String(8), nullable=True)
    display_text = Column(Text, nullable=True)
    privacy_url = Column(Text, nullable=True)
    marketing_preferences = Column(Text, nullable=True)

    intended_status = Column(Enum(ConsentStatus, name="consentstatus"), nullable=True)

    order_id = Column(String(64), unique=True, nullable=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    resolved_subscribed = Column(Boolean, nullable=True)
    consent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    customer = relationship("CustomerConsentRecord", back_populates="sessions")
    events = relationship("ConsentEvent", back_populates="session", cascade="all, delete-orphan")
