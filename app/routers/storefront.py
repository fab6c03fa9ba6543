"""
Storefront endpoints called by the checkout consent widget.

Both are authenticated with the checkout session token. The policy endpoint
never fails checkout: any lookup error degrades to the default rule.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from app.auth.dependencies import get_storefront_shop
from app.config import settings
from app.database import get_db
from app.integrations import geo
from app.integrations.shopify import normalize_email
from app.models.checkout_session import PresentationMode
from app.models.consent_event import ConsentEventType
from app.models.customer import ConsentStatus
from app.schemas.consent import ConsentEventRequest, ConsentEventResponse, ConsentPolicyResponse
from app.services import consent_policy, consent_store
from app.services.reconciliation import ConsentSignal, ReconciliationOutcome, reconcile
from app.services.shop_settings import (
    DEFAULT_OPT_IN_TEXT,
    DEFAULT_OPT_OUT_TEXT,
    StorefrontTexts,
    get_storefront_texts,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/consent", tags=["Storefront"])

NO_STORE = "no-store, no-cache, must-revalidate"

# Older widget builds post the platform-prefixed name
TOGGLE_EVENT_TYPES = {ConsentEventType.CHECKOUT_TOGGLE.value, "shopify_checkout_toggle"}


def _region_from_request(request: Request) -> str:
    ip = geo.client_ip_from_headers(request.headers)
    return (
        geo.country_from_ip(ip)
        or geo.country_from_edge_headers(request.headers)
        or settings.default_region_code
    )


def _display_text(mode: PresentationMode, texts: StorefrontTexts) -> str:
    if mode == PresentationMode.OPT_IN:
        return texts.opt_in_text
    if mode == PresentationMode.OPT_OUT:
        return texts.opt_out_text
    return texts.no_checkbox_text


def _default_policy_response(shop: str) -> ConsentPolicyResponse:
    policy = consent_policy.DEFAULT_POLICY
    mode = policy.presentation_mode
    return ConsentPolicyResponse(
        store_domain=shop,
        region_code=policy.region_code,
        mode=mode,
        confirmation_strength=policy.confirmation_strength.value,
        display_text=DEFAULT_OPT_IN_TEXT if mode == PresentationMode.OPT_IN else DEFAULT_OPT_OUT_TEXT,
        is_default=True,
    )


@router.get("/policy", response_model=ConsentPolicyResponse)
def get_consent_policy(
    request: Request,
    response: Response,
    shop: str = Depends(get_storefront_shop),
    db: Session = Depends(get_db),
):
    """
    Presentation decision for this checkout plus the session id the widget
    must attach to the order (note attribute `consent_session_id`).
    """
    response.headers["Cache-Control"] = NO_STORE
    checkout_token = request.headers.get("x-checkout-token") or None
    email = normalize_email(request.headers.get("x-customer-email"))

    try:
        region = _region_from_request(request)
        policy = consent_policy.resolve(region)
        mode = policy.presentation_mode

        # A customer who unsubscribed must actively opt back in
        if email:
            existing = consent_store.find_customer(db, shop, email=email)
            if existing is not None and existing.status == ConsentStatus.UNSUBSCRIBED:
                mode = PresentationMode.OPT_IN

        texts = get_storefront_texts(db, shop)
        display_text = _display_text(mode, texts)

        session_id = None
        if checkout_token:
            session = consent_store.upsert_session_for_token(
                db,
                shop,
                checkout_token,
                mode,
                region,
                display_text=display_text,
                privacy_url=texts.privacy_url,
                marketing_preferences=texts.marketing_info,
            )
            db.commit()
            session_id = session.id

        return ConsentPolicyResponse(
            session_id=session_id,
            store_domain=shop,
            region_code=region,
            mode=mode,
            confirmation_strength=policy.confirmation_strength.value,
            display_text=display_text,
            marketing_preferences=texts.marketing_info,
            privacy_url=texts.privacy_url,
            is_default=policy.is_default,
        )

    except Exception as e:
        db.rollback()
        logger.error("Consent policy lookup failed for %s (token=%s): %s", shop, checkout_token, e, exc_info=True)
        return _default_policy_response(shop)


@router.post("/event", response_model=ConsentEventResponse)
def post_consent_event(
    body: ConsentEventRequest,
    request: Request,
    response: Response,
    shop: str = Depends(get_storefront_shop),
    db: Session = Depends(get_db),
):
    """Record a checkout toggle. Always answers ok; unknown sessions are not recorded."""
    response.headers["Cache-Control"] = NO_STORE
    checkout_token = request.headers.get("x-checkout-token")

    if body.type not in TOGGLE_EVENT_TYPES:
        logger.info("Storefront event type %s from %s not recorded", body.type, shop)
        return ConsentEventResponse(shop=shop, checkout_token_present=bool(checkout_token))

    signal = ConsentSignal(
        type=ConsentEventType.CHECKOUT_TOGGLE,
        shop=shop,
        session_id=body.session_id,
        status=body.state,
        occurred_at=body.occurred_at,
        region=(body.country or "").strip().upper() or None,
        text=_note_text(body.note),
    )
    recorded = False
    try:
        result = reconcile(db, signal)
        recorded = result.outcome == ReconciliationOutcome.RECORDED
    except Exception as e:
        db.rollback()
        logger.error("Toggle for session %s on %s not recorded: %s", body.session_id, shop, e, exc_info=True)

    return ConsentEventResponse(
        recorded=recorded,
        shop=shop,
        checkout_token_present=bool(checkout_token),
    )


def _note_text(note) -> Optional[str]:
    if note is None:
        return None
    if isinstance(note, str):
        return note
    if isinstance(note, dict):
        text = note.get("text")
        return str(text) if text is not None else None
    return str(note)
