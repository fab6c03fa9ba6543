"""
Shopify webhook receivers.

Receive-fast pattern: validate HMAC over the raw body, then reconcile either
in a Celery task or inline. Every authenticated delivery is acknowledged with
the same body; reconciliation failures are logged, never returned, so Shopify
only redelivers on transport failures.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.integrations.shopify import (
    TOPIC_CONSENT_UPDATE,
    TOPIC_CUSTOMERS_UPDATE,
    TOPIC_ORDERS_CREATE,
    is_supported_topic,
    validate_hmac,
)
from app.schemas.webhooks import WebhookResponse
from app.services.reconciliation import handle_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _receive(request: Request, topic: str, db: Session) -> WebhookResponse:
    body = await request.body()
    if not validate_hmac(body, request.headers.get("X-Shopify-Hmac-Sha256"), settings.platform_api_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    shop = request.headers.get("X-Shopify-Shop-Domain", "")
    header_topic = request.headers.get("X-Shopify-Topic")
    if header_topic and header_topic != topic:
        logger.warning("Webhook topic header %s does not match route %s", header_topic, topic)

    if not is_supported_topic(topic) or not shop:
        logger.info("Ignoring %s webhook without a shop domain", topic)
        return WebhookResponse()

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("Unparseable %s webhook body from %s", topic, shop)
        return WebhookResponse()
    if not isinstance(payload, dict):
        logger.warning("Non-object %s webhook body from %s ignored", topic, shop)
        return WebhookResponse()

    if settings.webhook_async_enabled:
        from app.tasks import process_platform_webhook
        process_platform_webhook.delay(topic, shop, payload)
        return WebhookResponse()

    try:
        result = handle_webhook(db, topic, shop, payload)
        logger.debug("%s from %s reconciled: %s", topic, shop, result.outcome.value)
    except Exception as e:
        db.rollback()
        logger.error(
            "Reconciliation of %s from %s failed (id=%s): %s",
            topic, shop, payload.get("id") or payload.get("customer_id"), e, exc_info=True,
        )
    return WebhookResponse()


@router.post("/orders/create", response_model=WebhookResponse)
async def orders_create_webhook(request: Request, db: Session = Depends(get_db)):
    return await _receive(request, TOPIC_ORDERS_CREATE, db)


@router.post("/customers/update", response_model=WebhookResponse)
async def customers_update_webhook(request: Request, db: Session = Depends(get_db)):
    return await _receive(request, TOPIC_CUSTOMERS_UPDATE, db)


@router.post("/customers/email-marketing-consent-update", response_model=WebhookResponse)
async def consent_update_webhook(request: Request, db: Session = Depends(get_db)):
    return await _receive(request, TOPIC_CONSENT_UPDATE, db)
