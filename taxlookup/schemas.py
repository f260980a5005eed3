"""Pydantic schemas for EGIS rows, aggregated property records and API requests.

EGIS attribute maps are loosely typed: numbers sometimes arrive as strings,
text sometimes as numbers, and blank numeric cells as ``""``. The row models
below pin each layer's attributes to a type right after fetch so the merge
logic works on typed fields. Unknown attributes are kept (``extra="allow"``).
"""

import re
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from .exceptions import InputValidationError
from .periods import ExemptionStatus

PARCEL_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-_.]+$")
PARCEL_ID_MAX_LENGTH = 20
MAX_PARCEL_IDS_PER_REQUEST = 500
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _coerce_flag(value: Any) -> bool | None:
    """EGIS flags arrive as booleans, 0/1 or Y/N strings."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().upper()
    if not text:
        return None
    return text in ("Y", "YES", "TRUE", "T", "1")


Number = Annotated[int | float | None, BeforeValidator(_blank_to_none)]
Year = Annotated[int | None, BeforeValidator(_blank_to_none)]
Flag = Annotated[bool | None, BeforeValidator(_coerce_flag)]


# =============================================================================
# EGIS LAYER ROWS
# =============================================================================


class EGISRow(BaseModel):
    """Base for a typed view of one feature's ``attributes``."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class ValueHistoryRow(EGISRow):
    """Layer 5: one assessed value per fiscal year."""

    fiscal_year: Year = None
    assessed_value: Number = None


class BuildingAttributes(EGISRow):
    """Structural attributes shared by the residential and condo layers."""

    parcel_id: str | None = None
    fiscal_year: Year = None
    quarter: str | None = None

    composite_land_use: str | None = None
    gross_area: Number = None
    living_area: Number = None
    building_style: str | None = None
    story_height: str | None = None
    floor: str | None = None
    penthouse_unit: str | None = None
    orientation: str | None = None

    bedrooms: Number = None
    full_bath: Number = None
    half_bath: Number = None
    other_fixtures: Number = None
    bath_style_1: str | None = None
    bath_style_2: str | None = None
    bath_style_3: str | None = None
    kitchens: Number = None
    kitchen_type: str | None = None
    kitchen_style_1: str | None = None
    kitchen_style_2: str | None = None
    kitchen_style_3: str | None = None

    year_built: Number = None
    exterior_finish: str | None = None
    exterior_condition: str | None = None
    interior_condition: str | None = None
    interior_finish: str | None = None
    view_: str | None = None
    grade: str | None = None
    roof_cover: str | None = None
    roof_structure: str | None = None
    foundation: str | None = None
    num_of_parking_spots: Number = None

    heat_type: str | None = None
    ac_type: str | None = None
    fireplaces: Number = None


class ResidentialAttributesRow(BuildingAttributes):
    """Layer 6: one row per building on the parcel."""

    OBJECTID: int | None = None


class CondoAttributesRow(BuildingAttributes):
    """Layer 9: condo unit attributes, plus unit-only fields."""

    complex: str | None = None
    bedroom_type: str | None = None
    rooms: Number = None
    corner_unit: str | None = None
    parking_ownership: str | None = None
    parking_type: str | None = None
    tandem_parking: str | None = None


class OwnerRow(EGISRow):
    """Layer 7: one row per owner."""

    parcel_id: str | None = None
    fiscal_year: Year = None
    quarter: str | None = None
    owner_name: str | None = None


class OutbuildingRow(EGISRow):
    """Layer 10."""

    code: str | None = None
    tot_units: Number = None
    quality: str | None = None
    condition: str | None = None


class SaleRow(EGISRow):
    """Layer 11: latest recorded sale. The price column is spelled two ways."""

    latest_sales_price: Number = None
    latest_sales_date: str | None = None
    latest_bkgpcert: str | None = None

    @property
    def sale_price(self) -> int | float | None:
        if self.latest_sales_price:
            return self.latest_sales_price
        extra = self.model_extra or {}
        return _blank_to_none(extra.get("latest-sales_price"))


class TaxRow(EGISRow):
    """Layer 12: one bill per ``bill_year``."""

    parcel_id: str | None = None
    bill_number: str | None = None
    bill_year: Year = None
    total_assessed_value: Number = None
    gross_re_tax: Number = None
    net_tax: Number = None
    net_re_tax: Number = None
    total_billed_amt: Number = None
    cpa_tax: Number = None
    resex_amt: Number = None
    resex_value: Number = None
    persexempt_total: Number = None
    personal_exemption_flag: Flag = None
    personal_ex_type_1: str | None = None
    personal_ex_amt_1: Number = None
    personal_ex_type_2: str | None = None
    personal_ex_amt_2: Number = None


class RealEstateRow(EGISRow):
    """Layer 13: address and classification."""

    parcel_id: str | None = None
    fiscal_year: Year = None
    quarter: str | None = None
    street_number: str | None = None
    street_number_suffix: str | None = None
    street_name: str | None = None
    apt_unit: str | None = None
    city: str | None = None
    location_zip_code: str | None = None
    land_use: str | None = None
    residential_exemption_flag: Flag = None
    property_type: str | None = None
    property_class_description: str | None = None
    property_code_description: str | None = None


# =============================================================================
# AGGREGATED PROPERTY RECORD
# =============================================================================


class PropertyLayout(str, Enum):
    """Which attribute-group arrangement a property uses."""

    MULTIPLE_BUILDINGS = "multiple_buildings"
    CONDO_UNIT_SPLIT = "condo_unit_split"
    STANDARD = "standard"


class AttributeField(BaseModel):
    label: str
    value: str | None = None


class AttributeCategory(BaseModel):
    title: str
    content: list[AttributeField] = Field(default_factory=list)


class AttributeGroup(BaseModel):
    """Top-level group. Content is either fields or nested categories."""

    title: str
    content: list[AttributeCategory] | list[AttributeField] = Field(default_factory=list)


class OverviewSection(BaseModel):
    full_address: str
    owners: list[str]
    assessed_value: float = 0
    property_type_code: str = "Not available"
    property_type_description: str = "Not available"
    land_use_code: str | None = None
    parcel_id: str
    net_tax: float = 0
    total_billed_amount: float = 0
    personal_exemption_flag: bool | None = None
    residential_exemption_flag: bool = False
    personal_exemption_amount: float = 0
    residential_exemption_amount: float = 0
    residential_exemption_status: ExemptionStatus = ExemptionStatus.NOT_GRANTED
    personal_exemption_status: ExemptionStatus = ExemptionStatus.NOT_GRANTED


class PropertyValueSection(BaseModel):
    historic_property_values: dict[int, float] = Field(
        default_factory=dict,
        description="Assessed value keyed by fiscal year; unordered",
    )


class PropertyAttributesSection(BaseModel):
    layout: PropertyLayout = PropertyLayout.STANDARD
    master_parcel_id: str | None = None
    attribute_groups: list[AttributeGroup] = Field(default_factory=list)


class PropertyTaxesSection(BaseModel):
    parcel_id: str
    bill_number: str | None = None
    bill_year: int | None = None
    total_assessed_value: float = 0
    property_gross_tax: float = 0
    residential_exemption_flag: bool = False
    personal_exemption_flag: bool | None = None
    residential_exemption_amount: float = 0
    residential_exemption_value: float = 0
    personal_exemption_amount: float = 0
    personal_exemption_type_1: str | None = None
    personal_exemption_amount_1: float = 0
    personal_exemption_type_2: str | None = None
    personal_exemption_amount_2: float = 0
    community_preservation_amount: float = 0
    property_net_tax: float = 0
    net_real_estate_tax: float = 0
    estimated_total_first_half: float = 0
    total_billed_amount: float = 0


class AggregatedPropertyRecord(BaseModel):
    """Everything known about one parcel, merged from the EGIS layers."""

    parcel_id: str
    overview: OverviewSection
    property_value: PropertyValueSection
    property_attributes: PropertyAttributesSection
    property_taxes: PropertyTaxesSection
    geometry: dict[str, Any] | None = None

    def attribute_value(self, label: str) -> str | None:
        """First field with ``label`` anywhere in the attribute groups."""
        for group in self.property_attributes.attribute_groups:
            for item in group.content:
                if isinstance(item, AttributeField):
                    if item.label == label:
                        return item.value
                    continue
                for f in item.content:
                    if f.label == label:
                        return f.value
        return None


class PropertySummary(BaseModel):
    """Search-result line: address, owner and assessed value."""

    parcel_id: str
    full_address: str
    owner: str = ""
    assessed_value: float = 0


class ParcelAddressPairing(BaseModel):
    parcel_id: str
    full_address: str


# =============================================================================
# REQUEST VALIDATION
# =============================================================================


def validate_parcel_id(parcel_id: Any) -> str:
    """Reject empty, over-long or oddly-charactered parcel ids."""
    if not isinstance(parcel_id, str) or not parcel_id.strip():
        raise InputValidationError("Parcel ID must be a non-empty string")
    parcel_id = parcel_id.strip()
    if len(parcel_id) > PARCEL_ID_MAX_LENGTH:
        raise InputValidationError(
            f"Parcel ID must be at most {PARCEL_ID_MAX_LENGTH} characters"
        )
    if not PARCEL_ID_PATTERN.match(parcel_id):
        raise InputValidationError(f"Invalid parcel ID format: {parcel_id}")
    return parcel_id


def parse_request_date(value: str | None) -> date | None:
    """Parse a ``YYYY-MM-DD`` query/body value. None passes through."""
    if value is None:
        return None
    if not DATE_PATTERN.match(value):
        raise InputValidationError(f"Invalid date format, expected YYYY-MM-DD: {value}")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as e:
        raise InputValidationError(f"Invalid date: {value}") from e


class ParcelIdsRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    parcel_ids: list[str] = Field(min_length=1, max_length=MAX_PARCEL_IDS_PER_REQUEST)
    date: str | None = Field(default=None, description="YYYY-MM-DD; pins the fiscal period")

    @field_validator("parcel_ids")
    @classmethod
    def check_parcel_ids(cls, v: list[str]) -> list[str]:
        return [validate_parcel_id(pid) for pid in v]

    @field_validator("date")
    @classmethod
    def check_date(cls, v: str | None) -> str | None:
        parse_request_date(v)
        return v


class FormRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    parcel_id: str
    form_type: Literal["residential", "personal", "abatement"]
    date: str | None = Field(default=None, description="YYYY-MM-DD; defaults to today")

    @field_validator("parcel_id")
    @classmethod
    def check_parcel_id(cls, v: str) -> str:
        return validate_parcel_id(v)

    @field_validator("date")
    @classmethod
    def check_date(cls, v: str | None) -> str | None:
        parse_request_date(v)
        return v
