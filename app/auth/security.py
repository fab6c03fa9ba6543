from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from app.config import settings

SESSION_TOKEN_ALGORITHM = "HS256"


def create_session_token(shop: str, expires_delta: Optional[timedelta] = None, **claims) -> str:
    """Mint a checkout session token the way Shopify does (local development and tests)."""
    now = datetime.now(timezone.utc)
    to_encode = {
        "dest": f"https://{shop}",
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=5)),
    }
    if settings.platform_api_key:
        to_encode["aud"] = settings.platform_api_key
    to_encode.update(claims)
    return jwt.encode(to_encode, settings.platform_api_secret, algorithm=SESSION_TOKEN_ALGORITHM)


def verify_session_token(token: str) -> Optional[dict]:
    """Verify a storefront session token and return its claims if valid"""
    if not settings.platform_api_secret:
        return None
    options = {"verify_aud": bool(settings.platform_api_key)}
    try:
        return jwt.decode(
            token,
            settings.platform_api_secret,
            algorithms=[SESSION_TOKEN_ALGORITHM],
            audience=settings.platform_api_key or None,
            options=options,
        )
    except JWTError:
        return None
