"""
IP → country lookup backed by a MaxMind GeoLite2 Country database.

The reader is opened lazily once per process. If the database is missing the
failure is remembered and every lookup answers None; it is not retried per
call. Private, loopback and link-local addresses are always unknown.
"""
import ipaddress
import logging
from typing import Mapping, Optional

import geoip2.database
import geoip2.errors

from app.config import settings

logger = logging.getLogger(__name__)

_UNSET = object()
_reader = _UNSET  # _UNSET = not initialised, None = failed / no database

_CLIENT_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "fastly-client-ip",
    "fly-client-ip",
)

_EDGE_COUNTRY_HEADERS = (
    "cf-ipcountry",
    "x-vercel-ip-country",
    "x-country-code",
)


def init_geo():
    """Open the GeoIP database on first use; remember failure as None."""
    global _reader
    if _reader is _UNSET:
        try:
            _reader = geoip2.database.Reader(str(settings.geoip_db_path))
            logger.info("GeoIP database loaded: %s", settings.geoip_db_path)
        except Exception as e:
            logger.warning("GeoIP database not available at %s: %s", settings.geoip_db_path, e)
            _reader = None
    return _reader


def reset_geo() -> None:
    global _reader
    if _reader not in (_UNSET, None):
        _reader.close()
    _reader = _UNSET


def _clean_ip(ip: str) -> str:
    ip = ip.strip()
    if ip.lower().startswith("::ffff:"):
        ip = ip[7:]
    return ip


def is_private_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(_clean_ip(ip))
    except ValueError:
        return True
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved


def country_from_ip(ip: Optional[str]) -> Optional[str]:
    """Return the ISO country code for an IP, or None when unknown."""
    if not ip or is_private_ip(ip):
        return None

    reader = init_geo()
    if reader is None:
        return None

    try:
        return reader.country(_clean_ip(ip)).country.iso_code
    except (geoip2.errors.AddressNotFoundError, ValueError):
        return None
    except Exception as e:
        logger.warning("GeoIP lookup failed for %s: %s", ip, e)
        return None


def client_ip_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    """First address of the first forwarding header present."""
    for name in _CLIENT_IP_HEADERS:
        raw = headers.get(name)
        if raw:
            first = _clean_ip(raw.split(",")[0])
            if first:
                return first
    return None


def country_from_edge_headers(headers: Mapping[str, str]) -> Optional[str]:
    """Country code injected by an edge proxy (Cloudflare, Vercel, ...)."""
    for name in _EDGE_COUNTRY_HEADERS:
        value = (headers.get(name) or "").strip().upper()
        # Cloudflare uses XX for unknown and T1 for Tor
        if len(value) == 2 and value not in ("XX", "T1"):
            return value
    return None
