"""
Consent policy lookup.

Maps (region, customer segment) to the checkbox presentation the storefront
must show and the confirmation strength the email provider list must honour.

The table is a static JSON file loaded once per process. Rows without a
customer_type act as the default for their region; a segment-specific row
wins over it. A buyer of unknown segment falls back to the region's
"single" row when the region has no untyped one. Malformed rows are skipped, and a table that cannot be loaded
at all leaves every lookup on the fixed default rule.
"""
import enum
import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from app.config import settings
from app.models.checkout_session import PresentationMode

logger = logging.getLogger(__name__)


class ConfirmationStrength(str, enum.Enum):
    SINGLE = "SINGLE"
    CONFIRMED = "CONFIRMED"


class CustomerSegment(str, enum.Enum):
    SINGLE = "single"
    REPEAT = "repeat"


@dataclass(frozen=True)
class ConsentPolicy:
    presentation_mode: PresentationMode
    confirmation_strength: ConfirmationStrength
    region_code: Optional[str]
    region_name: Optional[str]
    segment: Optional[CustomerSegment] = None
    is_default: bool = False


DEFAULT_POLICY = ConsentPolicy(
    presentation_mode=PresentationMode.OPT_OUT,
    confirmation_strength=ConfirmationStrength.SINGLE,
    region_code="GB",
    region_name="United Kingdom",
    segment=None,
    is_default=True,
)

_SEGMENT_ALIASES: Dict[str, CustomerSegment] = {
    "single": CustomerSegment.SINGLE,
    "first": CustomerSegment.SINGLE,
    "first_time": CustomerSegment.SINGLE,
    "first-time": CustomerSegment.SINGLE,
    "repeat": CustomerSegment.REPEAT,
    "returning": CustomerSegment.REPEAT,
}

_EMAIL_METHODS: Dict[str, ConfirmationStrength] = {
    "SOI": ConfirmationStrength.SINGLE,
    "SINGLE": ConfirmationStrength.SINGLE,
    "DOI": ConfirmationStrength.CONFIRMED,
    "CONFIRMED": ConfirmationStrength.CONFIRMED,
}

_Key = Tuple[str, Optional[CustomerSegment]]


def normalize_segment(value) -> Optional[CustomerSegment]:
    """Accept enum members, aliases like 'first-time'/'returning', or None."""
    if value is None:
        return None
    if isinstance(value, CustomerSegment):
        return value
    return _SEGMENT_ALIASES.get(str(value).strip().lower())


def _parse_row(row: dict) -> Tuple[Optional[str], Optional[str], ConsentPolicy]:
    code = str(row.get("country_code") or "").strip().upper() or None
    name = str(row.get("country") or "").strip() or None
    if not code and not name:
        raise ValueError("row has neither country_code nor country")

    raw_segment = row.get("customer_type")
    segment = normalize_segment(raw_segment)
    if raw_segment not in (None, "") and segment is None:
        raise ValueError(f"unknown customer_type {raw_segment!r}")

    mode = PresentationMode(str(row["widget"]).strip().upper())
    strength = _EMAIL_METHODS[str(row["email_method"]).strip().upper()]

    policy = ConsentPolicy(
        presentation_mode=mode,
        confirmation_strength=strength,
        region_code=code,
        region_name=name,
        segment=segment,
    )
    return code, name, policy


class PolicyTable:
    """In-memory index of policy rows by region code and by region name."""

    def __init__(self, rows: Iterable[dict], default_region: str = "GB"):
        self.default_region = default_region.upper()
        self._by_code: Dict[_Key, ConsentPolicy] = {}
        self._by_name: Dict[_Key, ConsentPolicy] = {}

        for index, row in enumerate(rows):
            try:
                code, name, policy = _parse_row(row)
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.warning("Skipping malformed consent policy row %d (%s): %s", index, e, row)
                continue
            if code:
                self._by_code[(code, policy.segment)] = policy
            if name:
                self._by_name[(name.lower(), policy.segment)] = policy

    def __len__(self) -> int:
        return len(self._by_code) + len(self._by_name)

    @staticmethod
    def _match(index: Dict[_Key, ConsentPolicy], key: str, segment: Optional[CustomerSegment]) -> Optional[ConsentPolicy]:
        if segment is not None:
            hit = index.get((key, segment))
            if hit:
                return hit
        hit = index.get((key, None))
        if hit is None and segment is None:
            # an unknown buyer is treated as first-time
            hit = index.get((key, CustomerSegment.SINGLE))
        return hit

    def lookup(
        self,
        region_code: Optional[str],
        country_name: Optional[str],
        segment: Optional[CustomerSegment],
    ) -> Optional[ConsentPolicy]:
        if region_code:
            hit = self._match(self._by_code, region_code.strip().upper(), segment)
            if hit:
                return hit
        if country_name:
            hit = self._match(self._by_name, country_name.strip().lower(), segment)
            if hit:
                return hit
        return None

    def default(self, segment: Optional[CustomerSegment]) -> ConsentPolicy:
        hit = self._match(self._by_code, self.default_region, segment)
        if hit:
            return ConsentPolicy(
                presentation_mode=hit.presentation_mode,
                confirmation_strength=hit.confirmation_strength,
                region_code=hit.region_code,
                region_name=hit.region_name,
                segment=hit.segment,
                is_default=True,
            )
        return DEFAULT_POLICY


# Process-scoped table; None means not loaded yet
_table: Optional[PolicyTable] = None


def load_policy_table(path=None) -> PolicyTable:
    """Read the policy JSON. A missing or unreadable file yields an empty table."""
    path = path or settings.consent_policy_path
    try:
        with open(path, encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list):
            raise ValueError("consent policy file must contain a JSON list")
    except (OSError, ValueError) as e:
        logger.error("Consent policy table unavailable at %s: %s. Using default rule only.", path, e)
        rows = []
    table = PolicyTable(rows, default_region=settings.default_region_code)
    logger.info("Consent policy table loaded: %d index entries from %s", len(table), path)
    return table


def get_policy_table() -> PolicyTable:
    global _table
    if _table is None:
        _table = load_policy_table()
    return _table


def reset_policy_table(table: Optional[PolicyTable] = None) -> None:
    """Replace (or drop) the cached table. Intended for tests."""
    global _table
    _table = table


def resolve(
    region_code: Optional[str] = None,
    country_name: Optional[str] = None,
    segment=None,
) -> ConsentPolicy:
    """
    Resolve the consent policy for a region and customer segment.

    Lookup order: region code + segment, region name + segment, then the
    default rule. Never raises.
    """
    try:
        normalized = normalize_segment(segment)
        table = get_policy_table()
        hit = table.lookup(region_code, country_name, normalized)
        if hit:
            return hit
        return table.default(normalized)
    except Exception as e:
        logger.error(
            "Consent policy lookup failed for region=%s country=%s segment=%s: %s",
            region_code, country_name, segment, e,
        )
        return DEFAULT_POLICY
