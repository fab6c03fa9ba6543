"""
Consent reconciliation engine.

Every inbound consent signal (storefront toggle, order webhook, platform
consent webhook, profile webhook, bulk sync row) ends up in reconcile().
The engine works out the candidate status, compares it with the stored
status, and only on a real change writes the record, commits, and then
drives the Shopify and Klaviyo synchronizers independently. An audit event
is appended for every signal except a suppressed echo.

Authoritative signals are last-write-wins by consent timestamp. On equal
timestamps the source precedence decides: platform consent webhook, then
bulk sync, then checkout completion.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from app.integrations import shopify
from app.models.checkout_session import CheckoutSession, PresentationMode
from app.models.consent_event import ConsentEventType
from app.models.customer import ConsentStatus, CustomerConsentRecord
from app.services import (
    consent_policy,
    consent_store,
    platform_sync,
    provider_sync,
    suppression_fence,
)
from app.services.consent_policy import ConfirmationStrength, CustomerSegment
from app.services.platform_sync import PlatformPushResult
from app.services.provider_sync import ConsentEvidence, ProviderSyncResult
from app.services.shop_settings import get_platform_access_token, get_provider_config

logger = logging.getLogger(__name__)

SOURCE_PRECEDENCE = {
    ConsentEventType.CHECKOUT_COMPLETED.value: 1,
    ConsentEventType.BULK_SYNC.value: 2,
    ConsentEventType.PLATFORM_CONSENT_UPDATE.value: 3,
}

PROVIDER_SOURCE_LABELS = {
    PresentationMode.OPT_OUT: "Checkout (opt-out shown)",
    PresentationMode.OPT_IN: "Checkout (opt-in shown)",
    PresentationMode.NO_CHECKBOX: "Checkout (no checkbox)",
}


class ReconciliationOutcome(str, enum.Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"
    SUPPRESSED = "suppressed"
    RECORDED = "recorded"
    IGNORED = "ignored"


@dataclass
class ConsentSignal:
    type: ConsentEventType
    shop: str
    platform_customer_id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: Optional[ConsentStatus] = None
    occurred_at: Optional[datetime] = None
    session_id: Optional[str] = None
    order_id: Optional[str] = None
    orders_count: Optional[int] = None
    region: Optional[str] = None
    text: Optional[str] = None
    push_provider: bool = True
    evidence: Optional[ConsentEvidence] = None
    note: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    status: Optional[ConsentStatus] = None
    customer_id: Optional[int] = None
    event_id: Optional[int] = None
    platform_result: Optional[PlatformPushResult] = None
    provider_result: Optional[ProviderSyncResult] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _subscribed_flag(status: Optional[ConsentStatus]) -> Optional[bool]:
    if status is None:
        return None
    return status == ConsentStatus.SUBSCRIBED


def is_stale(
    customer: CustomerConsentRecord,
    incoming_at: Optional[datetime],
    signal_type: ConsentEventType,
) -> bool:
    """True when an authoritative signal must not overwrite the stored state."""
    stored_at = customer.last_consent_at
    if stored_at is None or incoming_at is None:
        return False
    stored_at = _as_utc(stored_at)
    incoming_at = _as_utc(incoming_at)
    if incoming_at < stored_at:
        return True
    if incoming_at > stored_at:
        return False
    incoming_rank = SOURCE_PRECEDENCE.get(signal_type.value, 0)
    stored_rank = SOURCE_PRECEDENCE.get(customer.last_consent_source or "", 0)
    return incoming_rank < stored_rank


def derive_checkout_status(
    db: Session, session: Optional[CheckoutSession]
) -> Tuple[Optional[ConsentStatus], Optional[str]]:
    """Status an order confirms: latest toggle, else the presentation default. (status, derived_from)"""
    if session is None:
        return None, None
    toggle = consent_store.latest_toggle(db, session.id)
    if toggle is not None and toggle.status is not None:
        return toggle.status, "toggle"
    if session.mode in (PresentationMode.OPT_OUT, PresentationMode.NO_CHECKBOX):
        return ConsentStatus.SUBSCRIBED, "mode"
    if session.mode == PresentationMode.OPT_IN:
        return ConsentStatus.NOT_SUBSCRIBED, "mode"
    return None, None


def derive_segment(db: Session, signal: ConsentSignal) -> Optional[CustomerSegment]:
    """single/repeat from the payload's order count, else Shopify's; None when unknown."""
    try:
        count = signal.orders_count
        if count is None and signal.platform_customer_id:
            token = get_platform_access_token(db, signal.shop)
            if token:
                count = shopify.get_number_of_orders(signal.shop, token, signal.platform_customer_id)
        if count is None:
            return None
        # orders/create counts include the order that just got created
        return CustomerSegment.REPEAT if count > 1 else CustomerSegment.SINGLE
    except Exception as e:
        logger.warning(
            "Segment lookup failed for %s/%s (order %s), using default policy: %s",
            signal.shop, signal.platform_customer_id, signal.order_id, e,
        )
        return None


def derive_region(session: Optional[CheckoutSession], signal: ConsentSignal) -> Optional[str]:
    try:
        candidates = []
        if session is not None:
            candidates.extend([session.region, session.ip_region, session.billing_region])
        candidates.append(signal.region)
        for value in candidates:
            if value:
                return str(value).strip().upper()
    except Exception as e:
        logger.warning("Region derivation failed for order %s on %s: %s", signal.order_id, signal.shop, e)
    return None


def _apply_status(
    customer: CustomerConsentRecord,
    status: ConsentStatus,
    at: datetime,
    source: ConsentEventType,
    mode: Optional[PresentationMode] = None,
    region: Optional[str] = None,
) -> None:
    customer.status = status
    customer.last_consent_at = at
    customer.last_consent_source = source.value
    if mode is not None:
        customer.last_mode = mode.value
    if region:
        customer.last_region = region


def _run_synchronizers(
    db: Session,
    customer: CustomerConsentRecord,
    previous: Optional[ConsentStatus],
    status: ConsentStatus,
    region: Optional[str],
    segment: Optional[CustomerSegment],
    strength: Optional[ConfirmationStrength],
    push_platform: bool,
    push_provider: bool,
    evidence: Optional[ConsentEvidence] = None,
    source: str = "Checkout",
) -> Tuple[Optional[PlatformPushResult], Optional[ProviderSyncResult]]:
    """Fire both synchronizers; neither one's failure affects the other or the stored state."""
    platform_result = None
    if push_platform:
        try:
            platform_result = platform_sync.push(db, customer, status, strength)
        except Exception as e:
            db.rollback()
            logger.error(
                "Shopify push crashed for %s/%s (%s): %s",
                customer.shop, customer.platform_customer_id, status.value, e, exc_info=True,
            )
            platform_result = PlatformPushResult.FAILED

    provider_result = None
    if push_provider:
        if status == ConsentStatus.NOT_SUBSCRIBED and previous != ConsentStatus.SUBSCRIBED:
            logger.debug("Skip Klaviyo sync for %s: nothing to remove", customer.email)
        else:
            try:
                list_config = get_provider_config(db, customer.shop)
                provider_result = provider_sync.sync(
                    customer.email,
                    status == ConsentStatus.SUBSCRIBED,
                    region,
                    segment,
                    list_config,
                    confirmation_strength=strength,
                    first_name=customer.first_name,
                    last_name=customer.last_name,
                    shop=customer.shop,
                    evidence=evidence,
                    source=source,
                )
            except Exception as e:
                logger.error(
                    "Klaviyo sync crashed for %s/%s (%s): %s",
                    customer.shop, customer.email, status.value, e, exc_info=True,
                )
                provider_result = ProviderSyncResult.FAILED

    return platform_result, provider_result


# ---------------------------------------------------------------------------
# Signal handlers
# ---------------------------------------------------------------------------

def record_checkout_toggle(db: Session, signal: ConsentSignal) -> ReconciliationResult:
    """Provisional: lands on the session only, never on the customer record."""
    session = consent_store.get_session(db, signal.session_id)
    if session is None:
        logger.info("Toggle for unknown checkout session %s on %s ignored", signal.session_id, signal.shop)
        return ReconciliationResult(ReconciliationOutcome.IGNORED)

    # Only a client timestamp identifies a redelivery; untimestamped toggles are distinct clicks
    if signal.occurred_at is not None:
        existing = consent_store.find_event(db, session.id, ConsentEventType.CHECKOUT_TOGGLE, signal.occurred_at)
        if existing is not None:
            logger.debug("Duplicate toggle for session %s at %s", session.id, signal.occurred_at)
            return ReconciliationResult(
                ReconciliationOutcome.RECORDED, existing.status, existing.customer_id, existing.id
            )
    occurred_at = signal.occurred_at or _now()

    note = {
        "source": "checkout_widget",
        "mode": session.mode.value if session.mode else None,
        "text": signal.text,
    }
    note.update(signal.note)
    event = consent_store.append_event(
        db,
        ConsentEventType.CHECKOUT_TOGGLE,
        customer_id=session.customer_id,
        session_id=session.id,
        status=signal.status,
        region=signal.region or session.region,
        note=note,
        occurred_at=occurred_at,
    )

    if session.order_id:
        logger.info("Toggle after order %s for session %s kept as audit only", session.order_id, session.id)
    else:
        latest = consent_store.latest_toggle(db, session.id)
        session.intended_status = latest.status if latest is not None else signal.status

    db.commit()
    return ReconciliationResult(ReconciliationOutcome.RECORDED, signal.status, session.customer_id, event.id)


def reconcile_checkout_completed(db: Session, signal: ConsentSignal) -> ReconciliationResult:
    session = consent_store.get_session(db, signal.session_id)
    if signal.session_id and session is None:
        logger.warning("Order %s on %s references unknown session %s", signal.order_id, signal.shop, signal.session_id)
    if session is not None and session.order_id and session.order_id != signal.order_id:
        logger.warning(
            "Session %s already belongs to order %s; order %s gets no session evidence",
            session.id, session.order_id, signal.order_id,
        )
        session = None

    candidate, derived_from = derive_checkout_status(db, session)
    segment = derive_segment(db, signal)
    region = derive_region(session, signal)
    policy = consent_policy.resolve(region, None, segment)
    occurred_at = signal.occurred_at or _now()
    session_id = session.id if session is not None else None

    note = {
        "source": "order_webhook",
        "order_id": signal.order_id,
        "mode": session.mode.value if session is not None and session.mode else None,
        "derived_from": derived_from,
        "region": region,
        "billing_region": signal.region,
        "segment": segment.value if segment else None,
        "confirmation_strength": policy.confirmation_strength.value,
    }

    customer, created = consent_store.get_or_create_customer(
        db, signal.shop, signal.platform_customer_id, signal.email, signal.first_name, signal.last_name
    )

    if customer is None:
        logger.warning("Order %s on %s has no customer identity; audit only", signal.order_id, signal.shop)
        note["identity"] = "missing"
        event = consent_store.append_event(
            db, ConsentEventType.CHECKOUT_COMPLETED, None, session_id, candidate, region, note, occurred_at
        )
        if session is not None:
            consent_store.link_session_to_order(
                db, session, signal.order_id, None, _subscribed_flag(candidate), signal.region, occurred_at
            )
        db.commit()
        return ReconciliationResult(ReconciliationOutcome.RECORDED, candidate, None, event.id)

    previous = customer.status
    next_status = candidate
    # An unticked opt-in box is not a decision; it never erases an explicit one
    if candidate == ConsentStatus.NOT_SUBSCRIBED and previous in (ConsentStatus.SUBSCRIBED, ConsentStatus.UNSUBSCRIBED):
        next_status = previous
        note["kept_status"] = previous.value

    if next_status is None:
        outcome = ReconciliationOutcome.RECORDED
    elif is_stale(customer, occurred_at, ConsentEventType.CHECKOUT_COMPLETED):
        outcome = ReconciliationOutcome.STALE
    elif next_status == previous:
        outcome = ReconciliationOutcome.UNCHANGED
    else:
        outcome = ReconciliationOutcome.APPLIED
        _apply_status(
            customer,
            next_status,
            occurred_at,
            ConsentEventType.CHECKOUT_COMPLETED,
            mode=session.mode if session is not None else None,
            region=region,
        )
    note["changed"] = outcome == ReconciliationOutcome.APPLIED
    note["stale"] = outcome == ReconciliationOutcome.STALE

    event = consent_store.append_event(
        db, ConsentEventType.CHECKOUT_COMPLETED, customer.id, session_id, next_status, region, note, occurred_at
    )
    if session is not None:
        consent_store.link_session_to_order(
            db, session, signal.order_id, customer.id, _subscribed_flag(next_status), signal.region, occurred_at
        )
        consent_store.backfill_session_events(db, session.id, customer.id)
    db.commit()

    logger.info(
        "Order %s on %s: customer %s %s -> %s (%s)",
        signal.order_id, signal.shop, customer.id,
        previous.value if previous else None,
        next_status.value if next_status else None,
        outcome.value,
    )
    result = ReconciliationResult(outcome, customer.status, customer.id, event.id)
    if outcome == ReconciliationOutcome.APPLIED:
        result.platform_result, result.provider_result = _run_synchronizers(
            db,
            customer,
            previous,
            next_status,
            region,
            segment,
            policy.confirmation_strength,
            push_platform=True,
            push_provider=True,
            evidence=signal.evidence or ConsentEvidence(explicit_toggle=derived_from == "toggle"),
            source=PROVIDER_SOURCE_LABELS.get(session.mode, "Checkout") if session is not None else "Checkout",
        )
    return result


def _reconcile_authoritative(
    db: Session,
    customer: CustomerConsentRecord,
    signal: ConsentSignal,
    status: ConsentStatus,
    note: Dict[str, Any],
) -> ReconciliationResult:
    occurred_at = signal.occurred_at or _now()
    previous = customer.status

    if is_stale(customer, occurred_at, signal.type):
        outcome = ReconciliationOutcome.STALE
        logger.info(
            "Stale %s for %s/%s ignored: %s older than stored %s",
            signal.type.value, signal.shop, customer.id, occurred_at, customer.last_consent_at,
        )
    elif previous == status:
        outcome = ReconciliationOutcome.UNCHANGED
    else:
        outcome = ReconciliationOutcome.APPLIED
        _apply_status(customer, status, occurred_at, signal.type, region=signal.region)
        if signal.type == ConsentEventType.PLATFORM_CONSENT_UPDATE:
            suppression_fence.clear(customer)
    note["changed"] = outcome == ReconciliationOutcome.APPLIED
    note["stale"] = outcome == ReconciliationOutcome.STALE

    event = consent_store.append_event(
        db, signal.type, customer.id, None, status, signal.region, note, occurred_at
    )
    db.commit()

    logger.info(
        "%s on %s: customer %s %s -> %s (%s)",
        signal.type.value, signal.shop, customer.id,
        previous.value if previous else None, status.value, outcome.value,
    )
    result = ReconciliationResult(outcome, customer.status, customer.id, event.id)
    if outcome == ReconciliationOutcome.APPLIED:
        # Platform-originated: the platform already holds this state
        _, result.provider_result = _run_synchronizers(
            db,
            customer,
            previous,
            status,
            customer.last_region,
            None,
            None,
            push_platform=False,
            push_provider=signal.push_provider,
            evidence=signal.evidence,
            source="Shopify",
        )
    return result


def reconcile_platform_consent(db: Session, signal: ConsentSignal) -> ReconciliationResult:
    status = signal.status or ConsentStatus.NOT_SUBSCRIBED

    existing = consent_store.find_customer(db, signal.shop, signal.platform_customer_id, signal.email)
    if suppression_fence.should_suppress(existing, status):
        logger.info(
            "Echo of our own push suppressed for %s/%s (%s)", signal.shop, existing.id, status.value
        )
        suppression_fence.clear(existing)
        db.commit()
        return ReconciliationResult(ReconciliationOutcome.SUPPRESSED, existing.status, existing.id)

    customer, _ = consent_store.get_or_create_customer(
        db, signal.shop, signal.platform_customer_id, signal.email, signal.first_name, signal.last_name
    )
    note = {"source": "platform_webhook"}
    note.update(signal.note)
    if customer is None:
        logger.warning("Consent webhook on %s without customer id or email; audit only", signal.shop)
        event = consent_store.append_event(
            db, signal.type, None, None, status, signal.region, note, signal.occurred_at
        )
        db.commit()
        return ReconciliationResult(ReconciliationOutcome.RECORDED, status, None, event.id)
    return _reconcile_authoritative(db, customer, signal, status, note)


def reconcile_bulk_sync(db: Session, signal: ConsentSignal) -> ReconciliationResult:
    status = signal.status or ConsentStatus.NOT_SUBSCRIBED
    customer, _ = consent_store.get_or_create_customer(
        db, signal.shop, signal.platform_customer_id, signal.email, signal.first_name, signal.last_name
    )
    if customer is None:
        logger.warning("Bulk sync row on %s without customer id or email skipped", signal.shop)
        return ReconciliationResult(ReconciliationOutcome.IGNORED, status)
    note = {"source": "bulk_sync", "platform_customer_id": signal.platform_customer_id}
    note.update(signal.note)
    return _reconcile_authoritative(db, customer, signal, status, note)


def reconcile_profile_update(db: Session, signal: ConsentSignal) -> ReconciliationResult:
    """Identity fields only. Status is seeded when the record is first created, never changed."""
    if not signal.platform_customer_id and not signal.email:
        logger.info("Profile update on %s without customer id or email ignored", signal.shop)
        return ReconciliationResult(ReconciliationOutcome.IGNORED)

    existing = consent_store.find_customer(db, signal.shop, signal.platform_customer_id, signal.email)
    changed = []
    seeded = None

    if existing is None:
        customer, _ = consent_store.get_or_create_customer(
            db, signal.shop, signal.platform_customer_id, signal.email, signal.first_name, signal.last_name
        )
        seeded = signal.status or ConsentStatus.NOT_SUBSCRIBED
        customer.status = seeded
        # Without a consent timestamp the seed must not outrank a later authoritative signal
        customer.last_consent_at = signal.occurred_at
        customer.last_consent_source = ConsentEventType.PROFILE_UPDATE.value
        if signal.region:
            customer.last_region = signal.region
        changed = [
            name
            for name, value in (
                ("email", signal.email),
                ("first_name", signal.first_name),
                ("last_name", signal.last_name),
            )
            if value
        ]
    else:
        customer = existing
        if signal.platform_customer_id and not customer.platform_customer_id:
            customer.platform_customer_id = signal.platform_customer_id
            changed.append("platform_customer_id")
        if signal.email and signal.email != customer.email:
            owner = consent_store.find_customer(db, signal.shop, email=signal.email)
            if owner is not None and owner.id != customer.id:
                logger.warning(
                    "Email %s on %s already belongs to customer %s; not moving it to %s",
                    signal.email, signal.shop, owner.id, customer.id,
                )
            else:
                customer.email = signal.email
                changed.append("email")
        if signal.first_name and signal.first_name != customer.first_name:
            customer.first_name = signal.first_name
            changed.append("first_name")
        if signal.last_name and signal.last_name != customer.last_name:
            customer.last_name = signal.last_name
            changed.append("last_name")

    note = {"source": "platform_webhook", "changed_fields": changed, "created": existing is None}
    event = consent_store.append_event(
        db, ConsentEventType.PROFILE_UPDATE, customer.id, None, seeded, signal.region, note, signal.occurred_at
    )
    db.commit()

    outcome = ReconciliationOutcome.APPLIED if changed or seeded else ReconciliationOutcome.UNCHANGED
    return ReconciliationResult(outcome, customer.status, customer.id, event.id)


_HANDLERS = {
    ConsentEventType.CHECKOUT_TOGGLE: record_checkout_toggle,
    ConsentEventType.CHECKOUT_COMPLETED: reconcile_checkout_completed,
    ConsentEventType.PLATFORM_CONSENT_UPDATE: reconcile_platform_consent,
    ConsentEventType.PROFILE_UPDATE: reconcile_profile_update,
    ConsentEventType.BULK_SYNC: reconcile_bulk_sync,
}


def reconcile(db: Session, signal: ConsentSignal) -> ReconciliationResult:
    """Apply one signal. Database errors propagate; external call failures never do."""
    handler = _HANDLERS.get(signal.type)
    if handler is None:
        logger.warning("No handler for signal type %s", signal.type)
        return ReconciliationResult(ReconciliationOutcome.IGNORED)
    return handler(db, signal)


# ---------------------------------------------------------------------------
# Webhook payloads -> signals
# ---------------------------------------------------------------------------

def signal_from_webhook(topic: str, shop: str, payload: dict) -> Optional[ConsentSignal]:
    if topic == shopify.TOPIC_ORDERS_CREATE:
        order = shopify.parse_order_payload(payload)
        if order is None:
            return None
        return ConsentSignal(
            type=ConsentEventType.CHECKOUT_COMPLETED,
            shop=shop,
            platform_customer_id=order.platform_customer_id,
            email=order.email,
            first_name=order.first_name,
            last_name=order.last_name,
            occurred_at=order.created_at,
            session_id=order.session_id,
            order_id=order.order_id,
            orders_count=order.orders_count,
            region=order.billing_region,
        )

    if topic == shopify.TOPIC_CUSTOMERS_UPDATE:
        data = shopify.parse_customer_payload(payload)
        return ConsentSignal(
            type=ConsentEventType.PROFILE_UPDATE,
            shop=shop,
            platform_customer_id=data.platform_customer_id,
            email=data.email,
            first_name=data.first_name,
            last_name=data.last_name,
            status=data.marketing_state,
            occurred_at=data.consent_updated_at,
            region=data.region,
        )

    if topic == shopify.TOPIC_CONSENT_UPDATE:
        data = shopify.parse_consent_payload(payload)
        consent = payload.get("email_marketing_consent") or {}
        return ConsentSignal(
            type=ConsentEventType.PLATFORM_CONSENT_UPDATE,
            shop=shop,
            platform_customer_id=data.platform_customer_id,
            email=data.email,
            status=data.marketing_state,
            occurred_at=data.consent_updated_at,
            note={
                "raw": {
                    "state": consent.get("state"),
                    "opt_in_level": consent.get("opt_in_level"),
                    "consent_updated_at": consent.get("consent_updated_at"),
                }
            },
        )

    return None


def signal_from_customer(shop: str, data: shopify.CustomerData, push_provider: bool = False) -> ConsentSignal:
    """Bulk sync row from a customers query node."""
    return ConsentSignal(
        type=ConsentEventType.BULK_SYNC,
        shop=shop,
        platform_customer_id=data.platform_customer_id,
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
        status=data.marketing_state,
        occurred_at=data.consent_updated_at,
        region=data.region,
        push_provider=push_provider,
        note={"opt_in_level": data.opt_in_level},
    )


def handle_webhook(db: Session, topic: str, shop: str, payload: dict) -> ReconciliationResult:
    signal = signal_from_webhook(topic, shop, payload)
    if signal is None:
        logger.info("Webhook %s from %s carried nothing to reconcile", topic, shop)
        return ReconciliationResult(ReconciliationOutcome.IGNORED)
    return reconcile(db, signal)
