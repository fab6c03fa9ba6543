# Database models
from .base import Base
from .customer import CustomerConsentRecord, ConsentStatus
from .checkout_session import CheckoutSession, PresentationMode
from .consent_event import ConsentEvent, ConsentEventType
from .shop_settings import ShopSettings

__all__ = [
    "Base",
    "CustomerConsentRecord",
    "ConsentStatus",
    "CheckoutSession",
    "PresentationMode",
    "ConsentEvent",
    "ConsentEventType",
    "ShopSettings",
]
