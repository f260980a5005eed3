"""Normalization helpers for raw EGIS attribute values.

EGIS stores most descriptive fields upper-cased and many coded fields as
``"CODE - Description"``. These helpers turn them into display text and
implement the residential-over-condo merge rule used when the same attribute
appears in both attribute layers.
"""

import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

logger = logging.getLogger(__name__)

ADDRESS_NOT_AVAILABLE = "Address not available"

# Short all-caps tokens ("LLC", "MA", "A-1") are abbreviations
ABBREVIATION_PATTERN = re.compile(r"^[A-Z0-9 .,'&-]+$")
ABBREVIATION_MAX_LENGTH = 6

MASTER_PARCEL_PATTERN = re.compile(r"^[A-Za-z0-9]+")
WORD_START_PATTERN = re.compile(r"\b\w", re.ASCII)
WORD_PATTERN = re.compile(r"\b\w+\b", re.ASCII)


# =============================================================================
# Text Normalization
# =============================================================================


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _is_abbreviation(text: str) -> bool:
    return len(text) <= ABBREVIATION_MAX_LENGTH and bool(ABBREVIATION_PATTERN.match(text))


def to_proper_case(value: Any) -> str:
    """Capitalize the first letter of every word, lower-casing the rest.

    None and blank input give ``""``. Short all-caps tokens are returned
    unchanged.
    """
    text = _as_text(value)
    if not text.strip():
        return ""
    if _is_abbreviation(text):
        return text
    return WORD_START_PATTERN.sub(lambda m: m.group().upper(), text.lower())


def to_name_case(value: Any) -> str:
    """Case an owner name, treating each space-separated part on its own.

    Hyphenated and apostrophe parts are capitalized separately, so
    ``"SMITH-JONES MARY O'NEIL"`` becomes ``"Smith-Jones Mary O'Neil"``.
    """
    text = _as_text(value)
    if not text.strip():
        return ""
    if _is_abbreviation(text):
        return text
    parts = text.lower().split(" ")
    return " ".join(
        WORD_PATTERN.sub(lambda m: m.group()[0].upper() + m.group()[1:], part)
        for part in parts
    )


def parse_after_dash(value: Any) -> str:
    """Return the proper-cased text after the last ``" - "`` separator.

    >>> parse_after_dash("R1 - ONE FAM DWELLING")
    'One Fam Dwelling'
    """
    text = _as_text(value)
    if not text.strip():
        return ""
    idx = text.rfind(" - ")
    result = text[idx + 3:].strip() if idx != -1 else text.strip()
    return to_proper_case(result)


def describe(value: Any) -> str:
    """Shorthand for the coded-field display transform."""
    return to_proper_case(parse_after_dash(value))


# =============================================================================
# Address Construction
# =============================================================================


def _trimmed(attrs: Mapping[str, Any], key: str) -> str:
    value = attrs.get(key)
    if value is None or value == "":
        return ""
    return str(value).strip()


def construct_full_address(attrs: Mapping[str, Any]) -> str:
    """Build ``"12-14 Main St #3, Boston, 02118"`` from address attributes.

    Reads ``street_number``, ``street_number_suffix``, ``street_name``,
    ``apt_unit``, ``city`` and ``location_zip_code``. EGIS writes ``"="`` in
    ``city`` for Boston proper.
    """
    street_number = _trimmed(attrs, "street_number")
    suffix = _trimmed(attrs, "street_number_suffix")
    street_name = to_proper_case(_trimmed(attrs, "street_name"))
    unit = _trimmed(attrs, "apt_unit")
    city = _trimmed(attrs, "city")
    city = "Boston" if city == "=" else to_proper_case(city)
    zip_code = _trimmed(attrs, "location_zip_code")

    full_number = street_number
    if suffix and suffix != street_number:
        full_number = f"{street_number}-{suffix}"

    address = full_number
    if street_name:
        address += (" " if address else "") + street_name
    if unit:
        address += f" #{unit}"
    if city:
        address += f", {city}"
    if zip_code:
        address += f", {zip_code}"

    return address or ADDRESS_NOT_AVAILABLE


# =============================================================================
# Merge Rules
# =============================================================================


def is_present(value: Any) -> bool:
    """Non-null and, unless numeric, non-empty. Zero counts as present."""
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return True
    return value != ""


def prioritize_value(residential_value: Any, condo_value: Any) -> Any:
    """Residential attribute if present, else the condo one, else None."""
    if is_present(residential_value):
        return residential_value
    if is_present(condo_value):
        return condo_value
    return None


# Structural fields compared between consecutive residential rows
BUILDING_COMPARISON_FIELDS: tuple[str, ...] = (
    "composite_land_use",
    "gross_area",
    "building_style",
    "story_height",
    "floor",
    "penthouse_unit",
    "orientation",
    "bedrooms",
    "full_bath",
    "half_bath",
    "bath_style_1",
    "bath_style_2",
    "bath_style_3",
    "kitchens",
    "kitchen_type",
    "kitchen_style_1",
    "kitchen_style_2",
    "kitchen_style_3",
    "year_built",
    "exterior_finish",
    "exterior_condition",
    "roof_cover",
    "roof_structure",
    "foundation",
    "num_of_parking_spots",
    "heat_type",
    "ac_type",
    "fireplaces",
)


def building_differences(prev: Mapping[str, Any], curr: Mapping[str, Any]) -> list[str]:
    return [f for f in BUILDING_COMPARISON_FIELDS if prev.get(f) != curr.get(f)]


def has_multiple_buildings(rows: Sequence[Mapping[str, Any]]) -> bool:
    """True when consecutive residential rows differ on a structural field."""
    if len(rows) <= 1:
        return False
    for i in range(1, len(rows)):
        differences = building_differences(rows[i - 1], rows[i])
        if differences:
            logger.debug(
                "Found differences between residential rows %d and %d: %s",
                i - 1, i, differences,
            )
            return True
    return False


def extract_master_parcel_id(complex_identifier: Any) -> str | None:
    """Leading alphanumeric run of a condo complex identifier."""
    text = _as_text(complex_identifier)
    if not text.strip():
        return None
    match = MASTER_PARCEL_PATTERN.match(text)
    return match.group() if match else None


# =============================================================================
# Number Formatting
# =============================================================================


def format_number(value: Any) -> str | None:
    """Render a numeric attribute without a trailing ``.0``."""
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def total_bathrooms(full_bath: Any, half_bath: Any) -> str | None:
    """Full baths plus half a bath per half bath, e.g. ``"2.5"``.

    None unless both counts are present.
    """
    if full_bath is None or half_bath is None:
        return None
    try:
        total = float(full_bath or 0) + float(half_bath or 0) * 0.5
    except (TypeError, ValueError):
        return None
    return format_number(total)


def format_sale_price(price: Any) -> str | None:
    """Thousands-separated price, e.g. ``"1,250,000"``. None for 0 or missing."""
    if not price:
        return None
    try:
        amount = float(price)
    except (TypeError, ValueError):
        return None
    if amount.is_integer():
        return f"{int(amount):,}"
    return f"{amount:,.3f}".rstrip("0").rstrip(".")
