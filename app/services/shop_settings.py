"""Per-shop configuration with a DB-first, env-fallback strategy."""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models.shop_settings import ShopSettings
from app.services.encryption import decrypt_value

logger = logging.getLogger(__name__)

DEFAULT_OPT_IN_TEXT = (
    "We would like to email you news, special offers and other promotional material "
    "that may be of interest to you. Tick the box to <b>opt in</b>."
)
DEFAULT_OPT_OUT_TEXT = (
    "We would like to email you news, special offers and other promotional material "
    "that may be of interest to you. Tick the box to <b>opt out.</b>"
)


@dataclass(frozen=True)
class ProviderListConfig:
    api_key: str
    single_list_id: Optional[str]
    double_list_id: Optional[str]

    @property
    def configured_lists(self) -> List[str]:
        """Distinct configured list ids, single-opt-in first."""
        lists: List[str] = []
        for list_id in (self.single_list_id, self.double_list_id):
            if list_id and list_id not in lists:
                lists.append(list_id)
        return lists


@dataclass(frozen=True)
class StorefrontTexts:
    opt_in_text: str
    opt_out_text: str
    no_checkbox_text: str
    marketing_info: str
    privacy_url: str


def get_shop_settings(db: Session, shop: str) -> Optional[ShopSettings]:
    try:
        return db.query(ShopSettings).filter(ShopSettings.shop == shop).first()
    except Exception as e:
        logger.warning("Failed to read shop settings for %s: %s", shop, e)
        return None


def list_configured_shops(db: Session) -> List[str]:
    return [row.shop for row in db.query(ShopSettings).all()]


def get_platform_access_token(db: Session, shop: str) -> str:
    """Admin API token for a shop; "" when none is configured anywhere."""
    row = get_shop_settings(db, shop)
    if row and row.platform_access_token_encrypted:
        decrypted = decrypt_value(row.platform_access_token_encrypted)
        if decrypted:
            return decrypted
    return settings.platform_access_token


def get_provider_config(db: Session, shop: str) -> ProviderListConfig:
    row = get_shop_settings(db, shop)
    api_key = ""
    single_list = None
    double_list = None
    if row:
        if row.provider_api_key_encrypted:
            api_key = decrypt_value(row.provider_api_key_encrypted)
        single_list = row.single_opt_list_id or None
        double_list = row.double_opt_list_id or None

    # Fallback to environment
    return ProviderListConfig(
        api_key=api_key or settings.provider_api_key,
        single_list_id=single_list or settings.provider_single_list_id or None,
        double_list_id=double_list or settings.provider_double_list_id or None,
    )


def get_storefront_texts(db: Session, shop: str) -> StorefrontTexts:
    row = get_shop_settings(db, shop)
    return StorefrontTexts(
        opt_in_text=(row.opt_in_text if row and row.opt_in_text is not None else DEFAULT_OPT_IN_TEXT),
        opt_out_text=(row.opt_out_text if row and row.opt_out_text is not None else DEFAULT_OPT_OUT_TEXT),
        no_checkbox_text=(row.no_checkbox_text or "") if row else "",
        marketing_info=(row.marketing_info or "") if row else "",
        privacy_url=(row.privacy_url or "") if row else "",
    )
