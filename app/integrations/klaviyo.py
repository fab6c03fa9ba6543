"""
Klaviyo REST client for profile lookup and list (un)subscription.

Profiles are resolved by email. The lookup that returns the marketing
subscription status depends on the `additional-fields` parameter, which not
every account accepts yet; TieredProfileLookup probes it and falls back to a
plain lookup that reports no status.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.redis_client import cache_get, cache_set

logger = logging.getLogger(__name__)

PROFILE_FIELDS = "id,email,first_name,last_name"


class ProviderAPIError(Exception):
    """Transport failure or non-2xx answer from Klaviyo."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class ProviderProfile:
    id: str
    email: str
    # subscribed | unsubscribed | suppressed | never_subscribed | None (unknown)
    status: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def _headers(api_key: str) -> dict:
    return {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "Authorization": f"Klaviyo-API-Key {api_key}",
        "Revision": settings.provider_api_revision,
    }


def _request(
    method: str,
    path: str,
    api_key: str,
    params: Optional[Dict[str, str]] = None,
    json: Optional[dict] = None,
) -> Optional[dict]:
    url = f"{settings.provider_api_base}{path}"
    try:
        with httpx.Client(timeout=settings.external_timeout_seconds) as client:
            resp = client.request(method, url, headers=_headers(api_key), params=params, json=json)
    except httpx.HTTPError as e:
        raise ProviderAPIError(f"{method} {path} failed: {e}") from e

    if resp.status_code >= 300:
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        raise ProviderAPIError(
            f"{method} {path} -> {resp.status_code}", status_code=resp.status_code, body=body
        )
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return None


def _email_filter(email: str) -> str:
    return f'equals(email,"{email}")'


def _profile_from_response(body: Optional[dict], email: str, with_status: bool) -> Optional[ProviderProfile]:
    data = (body or {}).get("data") or []
    if not data:
        return None
    first = data[0]
    attrs = first.get("attributes") or {}
    status = None
    if with_status:
        status = (
            ((attrs.get("subscriptions") or {}).get("email") or {}).get("marketing") or {}
        ).get("status")
    profile_id = first.get("id")
    if not profile_id:
        return None
    return ProviderProfile(
        id=profile_id,
        email=email,
        status=status,
        first_name=attrs.get("first_name"),
        last_name=attrs.get("last_name"),
    )


class SubscriptionAwareLookup:
    """Profile lookup including the email marketing subscription status."""

    def find(self, api_key: str, email: str) -> Optional[ProviderProfile]:
        body = _request(
            "GET",
            "/profiles",
            api_key,
            params={
                "filter": _email_filter(email),
                "fields[profile]": PROFILE_FIELDS,
                "additional-fields[profile]": "subscriptions",
            },
        )
        return _profile_from_response(body, email, with_status=True)


class BasicLookup:
    """Profile lookup without subscription data; status is always unknown."""

    def find(self, api_key: str, email: str) -> Optional[ProviderProfile]:
        body = _request(
            "GET",
            "/profiles",
            api_key,
            params={"filter": _email_filter(email), "fields[profile]": PROFILE_FIELDS},
        )
        return _profile_from_response(body, email, with_status=False)


class TieredProfileLookup:
    """
    Try the subscription-aware lookup first and fall back to the basic one.

    When the rich variant is rejected outright (4xx) the verdict is cached in
    Redis per API key so later calls skip straight to the basic lookup until
    the cache entry expires and the capability is probed again.
    """

    _CACHE_PREFIX = "klaviyo:subscriptions_lookup_unsupported:"

    def __init__(self, preferred=None, fallback=None):
        self.preferred = preferred or SubscriptionAwareLookup()
        self.fallback = fallback or BasicLookup()

    def _cache_key(self, api_key: str) -> str:
        return self._CACHE_PREFIX + hashlib.sha256(api_key.encode()).hexdigest()[:16]

    def find(self, api_key: str, email: str) -> Optional[ProviderProfile]:
        key = self._cache_key(api_key)
        if cache_get(key) != "1":
            try:
                return self.preferred.find(api_key, email)
            except ProviderAPIError as e:
                logger.info("Subscription-aware profile lookup failed (%s), falling back to basic lookup", e)
                if e.status_code is not None and 400 <= e.status_code < 500 and e.status_code != 429:
                    cache_set(key, "1", settings.provider_probe_cache_ttl_seconds)
        return self.fallback.find(api_key, email)


profile_lookup = TieredProfileLookup()


def find_profile(api_key: str, email: str) -> Optional[ProviderProfile]:
    return profile_lookup.find(api_key, email)


def create_profile(
    api_key: str,
    email: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Optional[str]:
    """Create a profile and return its id. A 409 duplicate resolves to the existing id."""
    attributes: Dict[str, Any] = {"email": email}
    if first_name:
        attributes["first_name"] = first_name
    if last_name:
        attributes["last_name"] = last_name

    try:
        body = _request("POST", "/profiles", api_key, json={"data": {"type": "profile", "attributes": attributes}})
    except ProviderAPIError as e:
        if e.status_code == 409 and isinstance(e.body, dict):
            for err in e.body.get("errors") or []:
                duplicate = (err.get("meta") or {}).get("duplicate_profile_id")
                if duplicate:
                    return duplicate
        raise
    return ((body or {}).get("data") or {}).get("id")


def update_profile_traits(
    api_key: str,
    profile_id: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    properties: Optional[Dict[str, Any]] = None,
) -> None:
    """Patch name and custom properties. Never touches subscription state."""
    attributes: Dict[str, Any] = {}
    if first_name:
        attributes["first_name"] = first_name
    if last_name:
        attributes["last_name"] = last_name
    clean_props = {k: v for k, v in (properties or {}).items() if v not in (None, "")}
    if clean_props:
        attributes["properties"] = clean_props
    if not attributes:
        return
    _request(
        "PATCH",
        f"/profiles/{profile_id}",
        api_key,
        json={"data": {"type": "profile", "id": profile_id, "attributes": attributes}},
    )


def subscribe_profile(api_key: str, list_id: str, email: str, source: str = "Checkout") -> None:
    """Queue a bulk subscribe job for one email on one list."""
    body = {
        "data": {
            "type": "profile-subscription-bulk-create-job",
            "attributes": {
                "custom_source": source,
                "profiles": {
                    "data": [
                        {
                            "type": "profile",
                            "attributes": {
                                "email": email,
                                "subscriptions": {"email": {"marketing": {"consent": "SUBSCRIBED"}}},
                            },
                        }
                    ]
                },
            },
            "relationships": {"list": {"data": {"type": "list", "id": list_id}}},
        }
    }
    _request("POST", "/profile-subscription-bulk-create-jobs/", api_key, json=body)


def unsubscribe_profile(api_key: str, list_id: str, email: str) -> None:
    """Queue a bulk unsubscribe job for one email on one list."""
    body = {
        "data": {
            "type": "profile-subscription-bulk-delete-job",
            "attributes": {
                "profiles": {"data": [{"type": "profile", "attributes": {"email": email}}]},
            },
            "relationships": {"list": {"data": {"type": "list", "id": list_id}}},
        }
    }
    _request("POST", "/profile-subscription-bulk-delete-jobs/", api_key, json=body)
