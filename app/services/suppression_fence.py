"""
Suppression fence against webhook echoes.

Before we push a consent state to Shopify we record the state we are about to
cause and a short expiry on the customer row. When Shopify's own
consent-update webhook comes back inside that window carrying the same
state, it is our echo and gets dropped. Anything else (expired window,
different state) is a genuine change and is processed normally.

The fence lives on the customer row and is best-effort: losing it costs one
redundant, idempotent provider call.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.config import settings
from app.models.customer import ConsentStatus, CustomerConsentRecord


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def arm(
    customer: CustomerConsentRecord,
    expected_state: ConsentStatus,
    ttl_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    ttl = settings.fence_ttl_seconds if ttl_seconds is None else ttl_seconds
    customer.fence_until = (now or _now()) + timedelta(seconds=ttl)
    customer.fence_state = expected_state


def is_armed(customer: CustomerConsentRecord, now: Optional[datetime] = None) -> bool:
    if customer.fence_until is None or customer.fence_state is None:
        return False
    return (now or _now()) <= _as_utc(customer.fence_until)


def should_suppress(
    customer: Optional[CustomerConsentRecord],
    observed_state: ConsentStatus,
    now: Optional[datetime] = None,
) -> bool:
    """True when observed_state is the echo of our own push still inside the window."""
    if customer is None or not is_armed(customer, now):
        return False
    return customer.fence_state == observed_state


def clear(customer: CustomerConsentRecord) -> None:
    customer.fence_until = None
    customer.fence_state = None
