"""
Pushes a resolved consent state to the customer's Shopify record.

The suppression fence is armed and committed before the mutation goes out so
the echo webhook Shopify emits can be recognised even if it races the
response. Any failure clears the fence again, otherwise a later genuine
webhook carrying the same state would be dropped.
"""
import enum
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.integrations import shopify
from app.integrations.shopify import PlatformAPIError
from app.models.customer import ConsentStatus, CustomerConsentRecord
from app.services import suppression_fence
from app.services.consent_policy import ConfirmationStrength
from app.services.shop_settings import get_platform_access_token

logger = logging.getLogger(__name__)


class PlatformPushResult(str, enum.Enum):
    PUSHED = "pushed"
    PUSHED_AFTER_REMEDIATION = "pushed_after_remediation"
    SKIPPED = "skipped"
    FAILED = "failed"


def _opt_in_level(strength: Optional[ConfirmationStrength]) -> str:
    if strength == ConfirmationStrength.CONFIRMED:
        return "CONFIRMED_OPT_IN"
    return "SINGLE_OPT_IN"


def _release_fence(db: Session, customer: CustomerConsentRecord) -> None:
    suppression_fence.clear(customer)
    try:
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("Failed to clear suppression fence for customer %s: %s", customer.id, e)


def push(
    db: Session,
    customer: CustomerConsentRecord,
    next_status: ConsentStatus,
    confirmation_strength: Optional[ConfirmationStrength] = None,
) -> PlatformPushResult:
    """Mirror next_status onto Shopify. Never raises."""
    shop = customer.shop
    platform_id = customer.platform_customer_id

    if not platform_id:
        logger.debug("Skip Shopify push for customer %s: no platform customer id", customer.id)
        return PlatformPushResult.SKIPPED

    # Shopify only accepts explicit states; "never decided" has nothing to mirror
    if next_status == ConsentStatus.NOT_SUBSCRIBED:
        logger.debug("Skip Shopify push for customer %s: NOT_SUBSCRIBED", customer.id)
        return PlatformPushResult.SKIPPED

    token = get_platform_access_token(db, shop)
    if not token:
        logger.warning("Skip Shopify push for %s/%s: no access token configured", shop, platform_id)
        return PlatformPushResult.SKIPPED

    suppression_fence.arm(customer, next_status)
    db.commit()

    opt_in_level = _opt_in_level(confirmation_strength)
    consent_at = datetime.now(timezone.utc)

    try:
        errors = shopify.update_email_marketing_consent(
            shop, token, platform_id, next_status.value, opt_in_level, consent_at
        )
        if not errors:
            logger.info("Shopify consent for %s/%s set to %s", shop, platform_id, next_status.value)
            return PlatformPushResult.PUSHED

        if shopify.is_email_conflict(errors) and customer.email:
            logger.info("Shopify email conflict for %s/%s, setting email and retrying once", shop, platform_id)
            fix_errors = shopify.update_customer_email(shop, token, platform_id, customer.email)
            if fix_errors:
                logger.warning("customerUpdate userErrors for %s/%s: %s", shop, platform_id, fix_errors)
            else:
                retry_errors = shopify.update_email_marketing_consent(
                    shop, token, platform_id, next_status.value, opt_in_level, consent_at
                )
                if not retry_errors:
                    return PlatformPushResult.PUSHED_AFTER_REMEDIATION
                logger.warning("Consent retry userErrors for %s/%s: %s", shop, platform_id, retry_errors)
        else:
            logger.warning(
                "customerEmailMarketingConsentUpdate userErrors for %s/%s: %s", shop, platform_id, errors
            )
    except PlatformAPIError as e:
        logger.warning("Shopify consent push failed for %s/%s (%s): %s", shop, platform_id, next_status.value, e)
    except Exception as e:
        logger.error(
            "Unexpected error pushing consent to Shopify for %s/%s: %s", shop, platform_id, e, exc_info=True
        )

    _release_fence(db, customer)
    return PlatformPushResult.FAILED
