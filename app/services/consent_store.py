"""
Consent state store: customer records, the audit trail and checkout sessions.

All functions take the caller's Session and only flush; committing is the
caller's decision so a reconciliation can make its state write durable
before any external call.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.checkout_session import CheckoutSession, PresentationMode
from app.models.consent_event import ConsentEvent, ConsentEventType
from app.models.customer import ConsentStatus, CustomerConsentRecord

logger = logging.getLogger(__name__)


def _by_platform_id(db: Session, shop: str, platform_customer_id: str) -> Optional[CustomerConsentRecord]:
    return db.query(CustomerConsentRecord).filter(
        CustomerConsentRecord.shop == shop,
        CustomerConsentRecord.platform_customer_id == platform_customer_id,
    ).first()


def _by_email(db: Session, shop: str, email: str) -> Optional[CustomerConsentRecord]:
    return db.query(CustomerConsentRecord).filter(
        CustomerConsentRecord.shop == shop,
        CustomerConsentRecord.email == email,
    ).first()


def find_customer(
    db: Session,
    shop: str,
    platform_customer_id: Optional[str] = None,
    email: Optional[str] = None,
) -> Optional[CustomerConsentRecord]:
    """Find a customer by platform id first, then by email."""
    customer = None
    if platform_customer_id:
        customer = _by_platform_id(db, shop, platform_customer_id)
    if customer is None and email:
        customer = _by_email(db, shop, email)
    return customer


def _resolve_identity(
    db: Session, shop: str, platform_customer_id: Optional[str], email: Optional[str]
) -> Tuple[Optional[CustomerConsentRecord], bool]:
    """(customer, email_taken). The id row wins when id and email point at different rows."""
    by_id = _by_platform_id(db, shop, platform_customer_id) if platform_customer_id else None
    by_email = _by_email(db, shop, email) if email else None

    if by_id is not None and by_email is not None and by_id.id != by_email.id:
        logger.warning(
            "Split customer identity in %s: platform id %s -> row %s, email %s -> row %s",
            shop, platform_customer_id, by_id.id, email, by_email.id,
        )
        return by_id, True
    return by_id or by_email, False


def get_or_create_customer(
    db: Session,
    shop: str,
    platform_customer_id: Optional[str] = None,
    email: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Tuple[Optional[CustomerConsentRecord], bool]:
    """
    Resolve both identity keys to a single row, creating it when neither exists.

    Returns (customer, created). Returns (None, False) when the signal carries
    no identity at all. If the id and the email point at two different rows,
    the id row wins and the email is left on the other row. The insert runs in
    a savepoint: when a concurrent delivery created the row first, the unique
    constraint fires and the winner's row is used instead.
    """
    if not platform_customer_id and not email:
        return None, False

    customer, email_taken = _resolve_identity(db, shop, platform_customer_id, email)

    if customer is None:
        new_customer = CustomerConsentRecord(
            shop=shop,
            platform_customer_id=platform_customer_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
        )
        try:
            with db.begin_nested():
                db.add(new_customer)
                db.flush()
            return new_customer, True
        except IntegrityError:
            customer, email_taken = _resolve_identity(db, shop, platform_customer_id, email)
            if customer is None:
                raise
            logger.info(
                "Customer %s/%s created concurrently; continuing with row %s",
                shop, platform_customer_id or email, customer.id,
            )

    if platform_customer_id and not customer.platform_customer_id:
        customer.platform_customer_id = platform_customer_id
    if email and customer.email != email and not email_taken:
        customer.email = email
    if first_name:
        customer.first_name = first_name
    if last_name:
        customer.last_name = last_name
    return customer, False


def append_event(
    db: Session,
    event_type: ConsentEventType,
    customer_id: Optional[int] = None,
    session_id: Optional[str] = None,
    status: Optional[ConsentStatus] = None,
    region: Optional[str] = None,
    note: Optional[Dict[str, Any]] = None,
    occurred_at: Optional[datetime] = None,
) -> ConsentEvent:
    event = ConsentEvent(
        type=event_type.value,
        customer_id=customer_id,
        session_id=session_id,
        status=status,
        region=region,
        note=note or {},
        occurred_at=occurred_at,
    )
    db.add(event)
    db.flush()
    return event


# ---------------------------------------------------------------------------
# Checkout sessions
# ---------------------------------------------------------------------------

def get_session(db: Session, session_id: Optional[str]) -> Optional[CheckoutSession]:
    if not session_id:
        return None
    return db.query(CheckoutSession).filter(CheckoutSession.id == session_id).first()


def upsert_session_for_token(
    db: Session,
    shop: str,
    checkout_token: str,
    mode: PresentationMode,
    region: Optional[str],
    display_text: Optional[str] = None,
    privacy_url: Optional[str] = None,
    marketing_preferences: Optional[str] = None,
) -> CheckoutSession:
    """Create or refresh the session for a checkout token. Linked sessions keep their presentation."""
    session = db.query(CheckoutSession).filter(CheckoutSession.checkout_token == checkout_token).first()
    if session is None:
        session = CheckoutSession(
            id=str(uuid.uuid4()),
            shop=shop,
            checkout_token=checkout_token,
            mode=mode,
            region=region,
            ip_region=region,
            display_text=display_text,
            privacy_url=privacy_url,
            marketing_preferences=marketing_preferences,
        )
        db.add(session)
        db.flush()
        return session

    if session.order_id:
        logger.info("Checkout session %s already linked to order %s; not refreshing", session.id, session.order_id)
        return session

    session.mode = mode
    session.region = region
    session.ip_region = region
    session.display_text = display_text
    session.privacy_url = privacy_url
    session.marketing_preferences = marketing_preferences
    return session


def find_event(
    db: Session,
    session_id: str,
    event_type: ConsentEventType,
    occurred_at: Optional[datetime],
) -> Optional[ConsentEvent]:
    query = db.query(ConsentEvent).filter(
        ConsentEvent.session_id == session_id,
        ConsentEvent.type == event_type.value,
    )
    if occurred_at is None:
        query = query.filter(ConsentEvent.occurred_at.is_(None))
    else:
        query = query.filter(ConsentEvent.occurred_at == occurred_at)
    return query.first()


def latest_toggle(db: Session, session_id: Optional[str]) -> Optional[ConsentEvent]:
    """Most recent checkout toggle for a session, by client time then arrival."""
    if not session_id:
        return None
    return (
        db.query(ConsentEvent)
        .filter(
            ConsentEvent.session_id == session_id,
            ConsentEvent.type == ConsentEventType.CHECKOUT_TOGGLE.value,
        )
        .order_by(ConsentEvent.occurred_at.desc().nullslast(), ConsentEvent.id.desc())
        .first()
    )


def backfill_session_events(db: Session, session_id: str, customer_id: int) -> int:
    """Link a session's anonymous events to the customer the order resolved."""
    return (
        db.query(ConsentEvent)
        .filter(ConsentEvent.session_id == session_id, ConsentEvent.customer_id.is_(None))
        .update({ConsentEvent.customer_id: customer_id}, synchronize_session=False)
    )


def link_session_to_order(
    db: Session,
    session: CheckoutSession,
    order_id: str,
    customer_id: Optional[int],
    resolved_subscribed: Optional[bool],
    billing_region: Optional[str],
    consent_at: Optional[datetime],
) -> None:
    if session.order_id and session.order_id != order_id:
        logger.warning(
            "Checkout session %s already linked to order %s, ignoring order %s",
            session.id, session.order_id, order_id,
        )
        return
    session.order_id = order_id
    session.customer_id = customer_id
    session.billing_region = billing_region or session.billing_region
    session.resolved_subscribed = resolved_subscribed
    session.consent_at = consent_at if resolved_subscribed is not None else None
