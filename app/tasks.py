"""
Celery tasks for async processing

Tasks:
- process_platform_webhook: Reconcile one Shopify webhook delivery
- sync_platform_customers: Nightly snapshot of every customer's consent from Shopify
- prune_consent_sessions: Delete checkout sessions that never reached an order
"""
import logging
from typing import Optional

from app.celery_app import celery_app
from app.database import SessionLocal

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.process_platform_webhook", bind=True, max_retries=1)
def process_platform_webhook(self, topic: str, shop: str, payload: dict):
    """
    Reconcile a Shopify webhook delivery.
    Runs async to keep the webhook endpoint fast; external call failures are
    absorbed by the engine, so a retry here only covers database errors.
    """
    from app.services.reconciliation import handle_webhook

    db = SessionLocal()
    try:
        result = handle_webhook(db, topic, shop, payload)
        return {
            "status": result.outcome.value,
            "customer_id": result.customer_id,
            "event_id": result.event_id,
        }

    except Exception as e:
        db.rollback()
        if self.request.retries < self.max_retries:
            raise self.retry(exc=e, countdown=30)
        logger.error("Webhook %s from %s failed after retry: %s", topic, shop, e, exc_info=True)
        return {"error": str(e)}

    finally:
        db.close()


def _sync_shop(db, shop: str, push_provider: bool, dry_run: bool) -> dict:
    from app.integrations import shopify
    from app.services import consent_store
    from app.services.reconciliation import ReconciliationOutcome, is_stale, reconcile, signal_from_customer
    from app.services.shop_settings import get_platform_access_token

    counters = {"fetched": 0, "applied": 0, "unchanged": 0, "stale": 0, "skipped": 0, "failed": 0}

    token = get_platform_access_token(db, shop)
    if not token:
        logger.warning("sync_platform_customers: no access token for %s", shop)
        counters["error"] = "no_access_token"
        return counters

    try:
        for data in shopify.iter_customers(shop, token):
            counters["fetched"] += 1
            signal = signal_from_customer(shop, data, push_provider=push_provider)
            try:
                if dry_run:
                    existing = consent_store.find_customer(db, shop, data.platform_customer_id, data.email)
                    if existing is None or (
                        existing.status != signal.status
                        and not is_stale(existing, signal.occurred_at, signal.type)
                    ):
                        counters["applied"] += 1
                        logger.info(
                            "[dry-run] %s %s -> %s",
                            "create" if existing is None else "update",
                            data.email or data.platform_customer_id,
                            signal.status.value if signal.status else None,
                        )
                    else:
                        counters["unchanged"] += 1
                    continue

                result = reconcile(db, signal)
                if result.outcome == ReconciliationOutcome.APPLIED:
                    counters["applied"] += 1
                elif result.outcome == ReconciliationOutcome.STALE:
                    counters["stale"] += 1
                elif result.outcome == ReconciliationOutcome.IGNORED:
                    counters["skipped"] += 1
                else:
                    counters["unchanged"] += 1

            except Exception as e:
                db.rollback()
                counters["failed"] += 1
                logger.error(
                    "sync_platform_customers: failed to reconcile %s/%s: %s",
                    shop, data.email or data.platform_customer_id, e,
                )
    except shopify.PlatformAPIError as e:
        logger.error("sync_platform_customers: paging aborted for %s: %s", shop, e)
        counters["error"] = str(e)

    return counters


@celery_app.task(name="sync_platform_customers", bind=True, max_retries=0)
def sync_platform_customers(self, shop: Optional[str] = None, push_provider: bool = False, dry_run: bool = False):
    """
    Reconcile every Shopify customer's consent as a bulk-sync signal.

    Runs for one shop, or every shop with stored settings when none is given.
    Rows already processed stay processed if a later page fails.
    """
    from app.services.shop_settings import list_configured_shops

    db = SessionLocal()
    try:
        if shop:
            shops = [shop]
        else:
            shops = list_configured_shops(db)
        if not shops:
            logger.info("sync_platform_customers: no shops configured")

        results = {}
        for current in shops:
            logger.info("sync_platform_customers: starting %s%s", current, " [dry-run]" if dry_run else "")
            results[current] = _sync_shop(db, current, push_provider, dry_run)
            logger.info("sync_platform_customers: %s done %s", current, results[current])

        return {"status": "ok", "dry_run": dry_run, "shops": results}

    except Exception as e:
        db.rollback()
        logger.error("sync_platform_customers failed: %s", e, exc_info=True)
        return {"error": str(e)}

    finally:
        db.close()


@celery_app.task(name="prune_consent_sessions", bind=True, max_retries=0)
def prune_consent_sessions(self, days: Optional[int] = None, batch: Optional[int] = None, dry_run: bool = False):
    """Delete abandoned checkout sessions and their events."""
    from app.services.housekeeping import prune_abandoned_sessions

    db = SessionLocal()
    try:
        stats = prune_abandoned_sessions(db, days=days, batch_size=batch, dry_run=dry_run)
        return {"status": "ok", "dry_run": dry_run, **stats}

    except Exception as e:
        db.rollback()
        logger.error("prune_consent_sessions failed: %s", e, exc_info=True)
        return {"error": str(e)}

    finally:
        db.close()
