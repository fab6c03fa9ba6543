"""
Shopify webhook parsing/validation and Admin GraphQL client.

Webhook auth: HMAC-SHA256 of the raw body with the app secret, base64, in the
X-Shopify-Hmac-Sha256 header.
API auth: per-shop offline access token in X-Shopify-Access-Token.
"""
import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlparse

import requests

from app.config import settings
from app.models.customer import ConsentStatus

logger = logging.getLogger(__name__)

# Supported webhook topics
TOPIC_ORDERS_CREATE = "orders/create"
TOPIC_CUSTOMERS_UPDATE = "customers/update"
TOPIC_CONSENT_UPDATE = "customers/email_marketing_consent_update"

SUPPORTED_TOPICS = {
    TOPIC_ORDERS_CREATE,
    TOPIC_CUSTOMERS_UPDATE,
    TOPIC_CONSENT_UPDATE,
}

SESSION_ATTRIBUTE_NAMES = ("consent_session_id", "consent_uuid")

CUSTOMERS_PAGE_SIZE = 250


class PlatformAPIError(Exception):
    """Transport failure, non-2xx status or top-level GraphQL errors."""


@dataclass
class OrderData:
    order_id: str
    email: Optional[str]
    platform_customer_id: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    orders_count: Optional[int]
    billing_region: Optional[str]
    session_id: Optional[str]
    created_at: Optional[datetime]
    raw_payload: dict = field(repr=False, default_factory=dict)


@dataclass
class CustomerData:
    platform_customer_id: Optional[str]
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    marketing_state: Optional[ConsentStatus]
    consent_updated_at: Optional[datetime]
    opt_in_level: Optional[str] = None
    region: Optional[str] = None
    raw_payload: dict = field(repr=False, default_factory=dict)


def validate_hmac(body: bytes, header_value: Optional[str], secret: str) -> bool:
    """Validate the X-Shopify-Hmac-Sha256 header against the app secret"""
    if not header_value or not secret:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, header_value.strip())


def is_supported_topic(topic: str) -> bool:
    return topic in SUPPORTED_TOPICS


def shop_from_dest(dest: Optional[str]) -> str:
    """Normalize a session token `dest` ("https://shop.myshopify.com") to a bare host."""
    if not dest:
        return ""
    parsed = urlparse(dest)
    if parsed.netloc:
        return parsed.netloc
    return dest.replace("https://", "").replace("http://", "").strip("/")


def customer_gid(customer_id: str) -> str:
    return f"gid://shopify/Customer/{customer_id}"


def gid_to_numeric(gid: Optional[str]) -> Optional[str]:
    if not gid:
        return None
    return str(gid).rsplit("/", 1)[-1] or None


def normalize_email(value: Any) -> Optional[str]:
    if not value:
        return None
    email = str(value).strip().lower()
    return email or None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable timestamp from Shopify: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_marketing_state(raw_state: Any, accepts_marketing: Any = None) -> Optional[ConsentStatus]:
    """
    Map Shopify's consent state to the tri-state enum.

    Prefers the modern email_marketing_consent.state; falls back to the legacy
    accepts_marketing boolean. Returns None when neither is present.
    """
    if raw_state:
        normalized = str(raw_state).strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return ConsentStatus(normalized)
        except ValueError:
            logger.info("Unknown Shopify marketing state %r, treating as NOT_SUBSCRIBED", raw_state)
            return ConsentStatus.NOT_SUBSCRIBED
    if isinstance(accepts_marketing, bool):
        return ConsentStatus.SUBSCRIBED if accepts_marketing else ConsentStatus.NOT_SUBSCRIBED
    return None


def _note_attribute(payload: dict, names) -> Optional[str]:
    attrs = payload.get("note_attributes") or []
    for name in names:
        for attr in attrs:
            if isinstance(attr, dict) and attr.get("name") == name and attr.get("value"):
                return str(attr["value"])
    return None


def parse_order_payload(payload: dict) -> Optional[OrderData]:
    """Parse an orders/create payload. Returns None when there is no order id."""
    order_id = payload.get("id")
    if order_id is None:
        logger.warning("Shopify order payload missing id: %s", payload)
        return None

    customer = payload.get("customer") or {}
    billing = payload.get("billing_address") or {}

    orders_count = customer.get("orders_count")
    if not isinstance(orders_count, int) or isinstance(orders_count, bool):
        orders_count = None

    return OrderData(
        order_id=str(order_id),
        email=normalize_email(payload.get("email") or customer.get("email")),
        platform_customer_id=_clean(customer.get("id")),
        first_name=_clean(customer.get("first_name")),
        last_name=_clean(customer.get("last_name")),
        orders_count=orders_count,
        billing_region=_clean(billing.get("country_code") or billing.get("country")),
        session_id=_note_attribute(payload, SESSION_ATTRIBUTE_NAMES),
        created_at=parse_timestamp(payload.get("created_at")),
        raw_payload=payload,
    )


def parse_customer_payload(payload: dict) -> CustomerData:
    """Parse a customers/update payload (profile fields plus optional consent object)."""
    consent = payload.get("email_marketing_consent") or {}
    address = payload.get("default_address") or {}
    return CustomerData(
        platform_customer_id=_clean(payload.get("id")),
        email=normalize_email(payload.get("email")),
        first_name=_clean(payload.get("first_name")),
        last_name=_clean(payload.get("last_name")),
        marketing_state=normalize_marketing_state(consent.get("state"), payload.get("accepts_marketing")),
        consent_updated_at=parse_timestamp(consent.get("consent_updated_at")),
        opt_in_level=_clean(consent.get("opt_in_level")),
        region=_clean(address.get("country_code")),
        raw_payload=payload,
    )


def parse_consent_payload(payload: dict) -> CustomerData:
    """Parse a customers/email_marketing_consent_update payload."""
    consent = payload.get("email_marketing_consent") or {}
    state = normalize_marketing_state(consent.get("state"))
    return CustomerData(
        platform_customer_id=_clean(payload.get("customer_id")),
        email=normalize_email(payload.get("email_address")),
        first_name=None,
        last_name=None,
        marketing_state=state or ConsentStatus.NOT_SUBSCRIBED,
        consent_updated_at=parse_timestamp(consent.get("consent_updated_at")),
        opt_in_level=_clean(consent.get("opt_in_level")),
        raw_payload=payload,
    )


# ---------------------------------------------------------------------------
# Shopify Admin GraphQL client
# ---------------------------------------------------------------------------

NUMBER_OF_ORDERS_QUERY = """
query customerOrderCount($id: ID!) {
  customer(id: $id) {
    numberOfOrders
  }
}
"""

EMAIL_CONSENT_MUTATION = """
mutation customerEmailMarketingConsentUpdate($input: CustomerEmailMarketingConsentUpdateInput!) {
  customerEmailMarketingConsentUpdate(input: $input) {
    userErrors { field message }
    customer {
      id
      emailMarketingConsent { marketingState marketingOptInLevel consentUpdatedAt }
    }
  }
}
"""

CUSTOMER_UPDATE_MUTATION = """
mutation customerUpdate($input: CustomerInput!) {
  customerUpdate(input: $input) {
    userErrors { field message }
    customer { id email }
  }
}
"""

CUSTOMERS_QUERY = """
query customers($first: Int!, $after: String) {
  customers(first: $first, after: $after, sortKey: ID) {
    pageInfo { hasNextPage endCursor }
    nodes {
      id
      email
      firstName
      lastName
      updatedAt
      defaultAddress { countryCodeV2 }
      emailMarketingConsent { marketingState marketingOptInLevel consentUpdatedAt }
    }
  }
}
"""


def _graphql_url(shop: str) -> str:
    return f"https://{shop}/admin/api/{settings.platform_api_version}/graphql.json"


def graphql(shop: str, access_token: str, query: str, variables: Optional[dict] = None) -> dict:
    """Run an Admin GraphQL operation and return its `data` object."""
    if not access_token:
        raise PlatformAPIError(f"No Shopify access token configured for {shop}")

    try:
        resp = requests.post(
            _graphql_url(shop),
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
            json={"query": query, "variables": variables or {}},
            timeout=settings.external_timeout_seconds,
        )
    except requests.RequestException as e:
        raise PlatformAPIError(f"Shopify request failed for {shop}: {e}") from e

    if resp.status_code != 200:
        raise PlatformAPIError(f"Shopify {resp.status_code} for {shop}: {resp.text[:500]}")

    try:
        body = resp.json()
    except ValueError as e:
        raise PlatformAPIError(f"Shopify returned non-JSON body for {shop}") from e

    if body.get("errors"):
        raise PlatformAPIError(f"Shopify GraphQL errors for {shop}: {body['errors']}")
    return body.get("data") or {}


def get_number_of_orders(shop: str, access_token: str, customer_id: str) -> Optional[int]:
    """Canonical order count for a customer, or None when Shopify does not report one."""
    data = graphql(shop, access_token, NUMBER_OF_ORDERS_QUERY, {"id": customer_gid(customer_id)})
    raw = (data.get("customer") or {}).get("numberOfOrders")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def update_email_marketing_consent(
    shop: str,
    access_token: str,
    customer_id: str,
    marketing_state: str,
    opt_in_level: str,
    consent_updated_at: datetime,
) -> List[Dict[str, Any]]:
    """Set a customer's email marketing consent. Returns the mutation's userErrors."""
    variables = {
        "input": {
            "customerId": customer_gid(customer_id),
            "emailMarketingConsent": {
                "marketingState": marketing_state,
                "marketingOptInLevel": opt_in_level,
                "consentUpdatedAt": consent_updated_at.isoformat(),
            },
        }
    }
    data = graphql(shop, access_token, EMAIL_CONSENT_MUTATION, variables)
    return (data.get("customerEmailMarketingConsentUpdate") or {}).get("userErrors") or []


def update_customer_email(shop: str, access_token: str, customer_id: str, email: str) -> List[Dict[str, Any]]:
    """Set the customer's email field explicitly. Returns the mutation's userErrors."""
    variables = {"input": {"id": customer_gid(customer_id), "email": email}}
    data = graphql(shop, access_token, CUSTOMER_UPDATE_MUTATION, variables)
    return (data.get("customerUpdate") or {}).get("userErrors") or []


def is_email_conflict(user_errors: List[Dict[str, Any]]) -> bool:
    """True when Shopify rejected the consent update over a duplicate/unique email."""
    for err in user_errors:
        message = str(err.get("message") or "").lower()
        if "unique email" in message or "email has already been taken" in message:
            return True
    return False


def parse_customer_node(node: dict) -> CustomerData:
    consent = node.get("emailMarketingConsent") or {}
    address = node.get("defaultAddress") or {}
    state = normalize_marketing_state(consent.get("marketingState")) or ConsentStatus.NOT_SUBSCRIBED
    consent_at = parse_timestamp(consent.get("consentUpdatedAt")) or parse_timestamp(node.get("updatedAt"))
    return CustomerData(
        platform_customer_id=gid_to_numeric(node.get("id")),
        email=normalize_email(node.get("email")),
        first_name=_clean(node.get("firstName")),
        last_name=_clean(node.get("lastName")),
        marketing_state=state,
        consent_updated_at=consent_at,
        opt_in_level=_clean(consent.get("marketingOptInLevel")),
        region=_clean(address.get("countryCodeV2")),
        raw_payload=node,
    )


def iter_customers(shop: str, access_token: str, page_size: int = CUSTOMERS_PAGE_SIZE) -> Iterator[CustomerData]:
    """
    Yield every customer of a shop as CustomerData, following the ID-sorted cursor.

    A failing page raises PlatformAPIError; rows already yielded stay processed.
    """
    after = None
    page = 0
    while True:
        page += 1
        data = graphql(shop, access_token, CUSTOMERS_QUERY, {"first": page_size, "after": after})
        connection = data.get("customers") or {}
        nodes = connection.get("nodes") or []
        logger.info("Shopify customers page %d for %s: %d nodes", page, shop, len(nodes))

        for node in nodes:
            try:
                yield parse_customer_node(node)
            except Exception as e:
                logger.warning("Failed to parse Shopify customer node %s: %s", node.get("id"), e)

        page_info = connection.get("pageInfo") or {}
        if not page_info.get("hasNextPage"):
            break
        after = page_info.get("endCursor")
        if not after:
            break
