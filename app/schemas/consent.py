"""Schemas for the storefront consent API."""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.checkout_session import PresentationMode
from app.models.customer import ConsentStatus


class ConsentPolicyResponse(BaseModel):
    session_id: Optional[str] = None
    store_domain: str
    region_code: str
    mode: PresentationMode
    confirmation_strength: str
    display_text: str = ""
    marketing_preferences: str = ""
    privacy_url: str = ""
    is_default: bool = False


class ConsentEventRequest(BaseModel):
    """Checkout toggle as posted by the widget (camelCase accepted)."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    type: str = "checkout_toggle"
    state: ConsentStatus
    country: Optional[str] = None
    note: Optional[Any] = None
    occurred_at: Optional[datetime] = Field(default=None, alias="occurredAt")


class ConsentEventResponse(BaseModel):
    ok: bool = True
    recorded: bool = False
    shop: str = ""
    checkout_token_present: bool = False
