"""
Mirrors a customer's consent onto Klaviyo list membership.

Subscribing targets one list chosen by confirmation strength; unsubscribing
removes the email from every configured list. Profile traits are patched
regardless of what happens to the subscription.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from app.config import settings
from app.integrations import klaviyo
from app.integrations.klaviyo import ProviderAPIError
from app.services import consent_policy
from app.services.consent_policy import ConfirmationStrength
from app.services.shop_settings import ProviderListConfig

logger = logging.getLogger(__name__)


class ProviderSyncResult(str, enum.Enum):
    SUBSCRIBED = "subscribed"
    ALREADY_SUBSCRIBED = "already_subscribed"
    SUPPRESSED_SKIPPED = "suppressed_skipped"
    UNSUBSCRIBED = "unsubscribed"
    PARTIALLY_UNSUBSCRIBED = "partially_unsubscribed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ConsentEvidence:
    """Caller-supplied proof of consent; which flags count as strong is configuration."""
    explicit_toggle: bool = False
    doi_confirmed: bool = False

    def is_strong(self, accepted_sources: Optional[Iterable[str]] = None) -> bool:
        sources = settings.strong_consent_source_list if accepted_sources is None else accepted_sources
        return any(getattr(self, name, False) is True for name in sources)


def select_list(config: ProviderListConfig, strength: Optional[ConfirmationStrength]) -> Optional[str]:
    """Double-opt-in list for CONFIRMED, single otherwise; either falls back to the other."""
    if strength == ConfirmationStrength.CONFIRMED:
        return config.double_list_id or config.single_list_id
    return config.single_list_id or config.double_list_id


def sync(
    email: Optional[str],
    subscribed: bool,
    region: Optional[str],
    segment,
    list_config: ProviderListConfig,
    confirmation_strength: Optional[ConfirmationStrength] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    shop: Optional[str] = None,
    evidence: Optional[ConsentEvidence] = None,
    source: str = "Checkout",
) -> ProviderSyncResult:
    """Bring the provider in line with `subscribed`. Never raises."""
    if not email:
        logger.debug("Skip Klaviyo sync: no email")
        return ProviderSyncResult.SKIPPED
    if not list_config.api_key:
        logger.debug("Skip Klaviyo sync for %s: no API key configured", email)
        return ProviderSyncResult.SKIPPED

    api_key = list_config.api_key
    target_list = None
    if subscribed:
        if confirmation_strength is None:
            confirmation_strength = consent_policy.resolve(region, None, segment).confirmation_strength
        target_list = select_list(list_config, confirmation_strength)
        if not target_list:
            logger.warning("Skip Klaviyo subscribe for %s: no list configured", email)
            return ProviderSyncResult.SKIPPED
    elif not list_config.configured_lists:
        logger.warning("Skip Klaviyo unsubscribe for %s: no list configured", email)
        return ProviderSyncResult.SKIPPED

    try:
        profile = klaviyo.find_profile(api_key, email)
    except ProviderAPIError as e:
        logger.warning("Klaviyo profile lookup failed for %s: %s", email, e)
        profile = None

    profile_id = profile.id if profile else None
    if profile_id is None:
        try:
            profile_id = klaviyo.create_profile(api_key, email, first_name, last_name)
        except ProviderAPIError as e:
            logger.warning("Klaviyo profile create failed for %s: %s", email, e)

    if profile_id:
        segment_value = consent_policy.normalize_segment(segment)
        try:
            klaviyo.update_profile_traits(
                api_key,
                profile_id,
                first_name=first_name,
                last_name=last_name,
                properties={
                    "shop": shop,
                    "country_code": region,
                    "customer_type": segment_value.value if segment_value else None,
                },
            )
        except ProviderAPIError as e:
            logger.info("Klaviyo trait patch failed for %s (non-fatal): %s", email, e)

    current_status = profile.status if profile else None

    if subscribed:
        if current_status == "subscribed":
            logger.debug("Klaviyo no-op for %s: already subscribed", email)
            return ProviderSyncResult.ALREADY_SUBSCRIBED
        if current_status == "suppressed" and not (evidence and evidence.is_strong()):
            logger.info("Skip Klaviyo subscribe for %s: profile suppressed and no strong consent evidence", email)
            return ProviderSyncResult.SUPPRESSED_SKIPPED
        try:
            klaviyo.subscribe_profile(api_key, target_list, email, source=source)
        except ProviderAPIError as e:
            logger.warning("Klaviyo subscribe failed for %s on list %s: %s", email, target_list, e)
            return ProviderSyncResult.FAILED
        logger.info(
            "Klaviyo subscribed %s to list %s (strength=%s, previous status=%s)",
            email, target_list, confirmation_strength.value if confirmation_strength else None, current_status,
        )
        return ProviderSyncResult.SUBSCRIBED

    failures = 0
    lists = list_config.configured_lists
    for list_id in lists:
        try:
            klaviyo.unsubscribe_profile(api_key, list_id, email)
        except ProviderAPIError as e:
            failures += 1
            logger.warning("Klaviyo unsubscribe failed for %s on list %s: %s", email, list_id, e)

    if failures == 0:
        return ProviderSyncResult.UNSUBSCRIBED
    if failures < len(lists):
        return ProviderSyncResult.PARTIALLY_UNSUBSCRIBED
    return ProviderSyncResult.FAILED
