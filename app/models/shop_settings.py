from sqlalchemy import Column, Integer, String, Text, DateTime
from sqlalchemy.sql import func
from .base import Base


class ShopSettings(Base):
    """Per-shop configuration, written by the admin app and only read here."""
    __tablename__ = "shop_settings"

    id = Column(Integer, primary_key=True, index=True)
    shop = Column(String(255), unique=True, nullable=False)

    opt_in_text = Column(Text, nullable=True)
    opt_out_text = Column(Text, nullable=True)
    no_checkbox_text = Column(Text, nullable=True)
    marketing_info = Column(Text, nullable=True)
    privacy_url = Column(Text, nullable=True)

    platform_access_token_encrypted = Column(Text, nullable=True)
    provider_api_key_encrypted = Column(Text, nullable=True)
    single_opt_list_id = Column(String(64), nullable=True)
    double_opt_list_id = Column(String(64), nullable=True)

    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
