"""Assemble one property record from the independently versioned EGIS layers.

All layer queries for a parcel run concurrently. The real estate query
(address and classification) must succeed; every other layer is optional and
degrades to an empty section when its query runs out of retries. Rows that
fail validation are skipped in every layer.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from .egis import (
    CONDO_ATTRIBUTES_LAYER,
    GEOMETRY_LAYER,
    OUTBUILDINGS_LAYER,
    OWNERS_LAYER,
    REAL_ESTATE_LAYER,
    RESIDENTIAL_ATTRIBUTES_LAYER,
    SALES_LAYER,
    TAXES_LAYER,
    VALUE_HISTORY_LAYER,
    EGISClient,
    EGISFeature,
    parcel_where,
)
from .exceptions import EGISRequestError, PropertyNotFoundError
from .periods import FiscalPeriod, exemption_status
from .schemas import (
    AggregatedPropertyRecord,
    AttributeCategory,
    AttributeField,
    AttributeGroup,
    BuildingAttributes,
    CondoAttributesRow,
    EGISRow,
    OutbuildingRow,
    OverviewSection,
    OwnerRow,
    ParcelAddressPairing,
    PropertyAttributesSection,
    PropertyLayout,
    PropertySummary,
    PropertyTaxesSection,
    PropertyValueSection,
    RealEstateRow,
    ResidentialAttributesRow,
    SaleRow,
    TaxRow,
    ValueHistoryRow,
)
from .transformations import (
    ADDRESS_NOT_AVAILABLE,
    construct_full_address,
    describe,
    extract_master_parcel_id,
    format_number,
    format_sale_price,
    has_multiple_buildings,
    parse_after_dash,
    prioritize_value,
    to_name_case,
    to_proper_case,
    total_bathrooms,
)

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Not available"
OWNER_NOT_AVAILABLE = "Owner not available"

RowT = TypeVar("RowT", bound=EGISRow)


# =============================================================================
# Attribute layouts: (label, key into the display-value dict)
# =============================================================================

GENERAL_FIELDS = (
    ("Land Use", "land_use"),
    ("Gross Area", "gross_area"),
    ("Living Area", "living_area"),
    ("Style", "style"),
    ("Story Height", "story_height"),
    ("Floor", "floor"),
    ("Penthouse Unit", "penthouse_unit"),
    ("Orientation", "orientation"),
)

ROOMS_FIELDS = (
    ("Number of Bedrooms", "bedrooms"),
    ("Total Bathrooms", "total_bathrooms"),
    ("Half Bathrooms", "half_bathrooms"),
    ("Bath Style 1", "bath_style_1"),
    ("Bath Style 2", "bath_style_2"),
    ("Bath Style 3", "bath_style_3"),
    ("Number of Kitchens", "kitchens"),
    ("Kitchen Type", "kitchen_type"),
    ("Kitchen Style 1", "kitchen_style_1"),
    ("Kitchen Style 2", "kitchen_style_2"),
    ("Kitchen Style 3", "kitchen_style_3"),
)

CONSTRUCTION_FIELDS = (
    ("Year Built", "year_built"),
    ("Exterior Finish", "exterior_finish"),
    ("Exterior Condition", "exterior_condition"),
    ("Roof Cover", "roof_cover"),
    ("Roof Structure", "roof_structure"),
    ("Foundation", "foundation"),
    ("Parking Spots", "parking_spots"),
)

# Shell attributes of a condo unit live on the complex group instead
UNIT_CONSTRUCTION_FIELDS = (
    ("Year Built", "year_built"),
    ("Parking Spots", "parking_spots"),
)

UTILITIES_FIELDS = (
    ("Heat Type", "heat_type"),
    ("AC Type", "ac_type"),
    ("Fireplaces", "fireplaces"),
)

CONDO_MAIN_FIELDS = (
    ("Master Parcel ID", "master_parcel_id"),
    ("Grade", "grade"),
    ("Exterior Condition", "exterior_condition"),
    ("Exterior Finish", "exterior_finish"),
    ("Foundation", "foundation"),
    ("Roof Cover", "roof_cover"),
    ("Roof Structure", "roof_structure"),
)

# Coded fields shown as their description; the rest are only proper-cased
DESCRIBED_FIELDS = (
    "bath_style_1", "bath_style_2", "bath_style_3",
    "kitchen_type", "kitchen_style_1", "kitchen_style_2", "kitchen_style_3",
    "exterior_finish", "exterior_condition", "interior_condition", "interior_finish",
    "roof_cover", "roof_structure", "foundation", "heat_type", "ac_type", "grade",
)
CASED_FIELDS = ("story_height", "floor", "penthouse_unit", "orientation")
NUMERIC_FIELDS = ("bedrooms", "half_bath", "other_fixtures", "kitchens", "year_built", "fireplaces")


@dataclass
class PropertyLayers:
    """Typed rows of every layer for one parcel, after version selection."""

    real_estate: list[RealEstateRow] = field(default_factory=list)
    value_history: list[ValueHistoryRow] = field(default_factory=list)
    owners: list[OwnerRow] = field(default_factory=list)
    residential: list[ResidentialAttributesRow] = field(default_factory=list)
    condo: list[CondoAttributesRow] = field(default_factory=list)
    outbuildings: list[OutbuildingRow] = field(default_factory=list)
    sales: list[SaleRow] = field(default_factory=list)
    taxes: list[TaxRow] = field(default_factory=list)
    geometry: dict[str, Any] | None = None


def parse_rows(model: type[RowT], features: list[EGISFeature]) -> list[RowT]:
    """Validate each feature's attributes. Malformed rows are logged and skipped."""
    rows = []
    for feature in features:
        try:
            rows.append(model.model_validate(feature.attributes))
        except ValidationError:
            logger.warning(
                "Skipping malformed %s: %s", model.__name__, feature.attributes, exc_info=True
            )
    return rows


def _with_unit(value: str | None, unit: str) -> str | None:
    return f"{value} {unit}" if value else None


def _area(value: Any) -> str | None:
    return _with_unit(format_number(value), "sq ft")


# =============================================================================
# Display values
# =============================================================================


def building_values(row: BuildingAttributes) -> dict[str, str | None]:
    """Display values for one building, from a single row."""
    values: dict[str, str | None] = {
        "land_use": parse_after_dash(row.composite_land_use) or None,
        "gross_area": _area(row.gross_area),
        "living_area": _area(row.living_area),
        "style": describe(row.building_style) or None,
        "total_bathrooms": total_bathrooms(row.full_bath, row.half_bath),
        "half_bathrooms": format_number(row.half_bath),
        "parking_spots": format_number(row.num_of_parking_spots),
        "view": describe(row.view_) or None,
    }
    for name in DESCRIBED_FIELDS:
        values[name] = describe(getattr(row, name)) or None
    for name in CASED_FIELDS:
        values[name] = to_proper_case(getattr(row, name)) or None
    for name in NUMERIC_FIELDS:
        values[name] = format_number(getattr(row, name))
    return values


def merged_values(
    residential: ResidentialAttributesRow,
    condo: CondoAttributesRow,
    real_estate: RealEstateRow,
) -> dict[str, str | None]:
    """Display values with residential attributes taking precedence over condo."""

    def text(name: str, transform: Callable[[Any], str] = describe) -> str | None:
        return prioritize_value(
            transform(getattr(residential, name)), transform(getattr(condo, name))
        )

    def number(name: str) -> Any:
        return prioritize_value(getattr(residential, name), getattr(condo, name))

    values: dict[str, str | None] = {
        "land_use": text("composite_land_use", parse_after_dash)
        or parse_after_dash(real_estate.land_use)
        or NOT_AVAILABLE,
        "gross_area": _area(number("gross_area")),
        "living_area": _area(number("living_area")),
        "style": text("building_style") or NOT_AVAILABLE,
        "total_bathrooms": total_bathrooms(number("full_bath"), number("half_bath")),
        "half_bathrooms": format_number(number("half_bath")),
        "parking_spots": format_number(number("num_of_parking_spots")),
        "view": text("view_"),
    }
    for name in DESCRIBED_FIELDS:
        values[name] = text(name)
    for name in CASED_FIELDS:
        values[name] = text(name, to_proper_case)
    for name in NUMERIC_FIELDS:
        values[name] = format_number(number(name))

    values["story_height"] = values["story_height"] or NOT_AVAILABLE
    values["foundation"] = values["foundation"] or NOT_AVAILABLE

    # Condo-only unit fields
    values["bedroom_type"] = describe(condo.bedroom_type) or None
    values["rooms"] = format_number(condo.rooms)
    values["corner_unit"] = to_proper_case(condo.corner_unit) or None
    values["parking_ownership"] = describe(condo.parking_ownership) or None
    values["parking_type"] = describe(condo.parking_type) or None
    values["tandem_parking"] = to_proper_case(condo.tandem_parking) or None
    return values


def condo_main_values(condo: CondoAttributesRow, master_parcel_id: str | None) -> dict[str, str | None]:
    return {
        "master_parcel_id": master_parcel_id,
        "grade": condo.grade or None,
        "exterior_condition": describe(condo.exterior_condition) or None,
        "exterior_finish": describe(condo.exterior_finish) or None,
        "foundation": describe(condo.foundation) or None,
        "roof_cover": describe(condo.roof_cover) or None,
        "roof_structure": describe(condo.roof_structure) or None,
    }


# =============================================================================
# Attribute groups
# =============================================================================


def _fields(
    values: dict[str, str | None], layout: tuple[tuple[str, str], ...]
) -> list[AttributeField]:
    return [
        AttributeField(label=label, value=values.get(key))
        for label, key in layout
        if values.get(key)
    ]


def _categories(
    values: dict[str, str | None], construction: tuple[tuple[str, str], ...] = CONSTRUCTION_FIELDS
) -> list[AttributeCategory]:
    return [
        AttributeCategory(title="General", content=_fields(values, GENERAL_FIELDS)),
        AttributeCategory(title="Rooms", content=_fields(values, ROOMS_FIELDS)),
        AttributeCategory(title="Construction", content=_fields(values, construction)),
        AttributeCategory(title="Utilities", content=_fields(values, UTILITIES_FIELDS)),
    ]


def common_groups(outbuildings: list[OutbuildingRow], sale: SaleRow) -> list[AttributeGroup]:
    """Outbuildings (when any) and the last transaction, shown for every layout."""
    groups: list[AttributeGroup] = []
    if outbuildings:
        categories = []
        for index, row in enumerate(outbuildings, start=1):
            values = {
                "type": describe(row.code) or None,
                "size": format_number(row.tot_units),
                "quality": describe(row.quality) or None,
                "condition": describe(row.condition) or None,
            }
            content = _fields(
                values,
                (("Type", "type"), ("Size", "size"), ("Quality", "quality"), ("Condition", "condition")),
            )
            categories.append(AttributeCategory(title=f"Outbuilding {index}", content=content))
        groups.append(AttributeGroup(title="Outbuildings", content=categories))

    price = format_sale_price(sale.sale_price)
    groups.append(
        AttributeGroup(
            title="Last Transaction",
            content=[
                AttributeField(label="Sale Price", value=f"${price}" if price else None),
                AttributeField(label="Sale Date", value=sale.latest_sales_date or None),
                AttributeField(label="Registry Book & Place", value=sale.latest_bkgpcert or None),
            ],
        )
    )
    return groups


def build_attributes_section(layers: PropertyLayers) -> PropertyAttributesSection:
    residential_rows = layers.residential
    primary = residential_rows[0] if residential_rows else ResidentialAttributesRow()
    condo = layers.condo[0] if layers.condo else CondoAttributesRow()
    real_estate = layers.real_estate[0] if layers.real_estate else RealEstateRow()
    sale = layers.sales[0] if layers.sales else SaleRow()

    multiple_buildings = has_multiple_buildings([row.model_dump() for row in residential_rows])
    is_complex = bool(condo.complex and condo.complex.strip())
    master_parcel_id = extract_master_parcel_id(condo.complex) if is_complex else None

    if len(residential_rows) > 1:
        layout = PropertyLayout.MULTIPLE_BUILDINGS
    elif is_complex:
        layout = PropertyLayout.CONDO_UNIT_SPLIT
    else:
        layout = PropertyLayout.STANDARD

    logger.info(
        "Property layout %s (buildings=%d, distinct=%s, complex=%r, master=%s)",
        layout.value, len(residential_rows), multiple_buildings, condo.complex or "", master_parcel_id,
    )

    groups: list[AttributeGroup] = []
    if multiple_buildings:
        for number, row in enumerate(residential_rows, start=1):
            groups.append(
                AttributeGroup(title=f"Building {number}", content=_categories(building_values(row)))
            )
    elif layout == PropertyLayout.CONDO_UNIT_SPLIT:
        values = merged_values(primary, condo, real_estate)
        groups.append(
            AttributeGroup(
                title="Condo Main Attributes",
                content=_fields(condo_main_values(condo, master_parcel_id), CONDO_MAIN_FIELDS),
            )
        )
        groups.append(
            AttributeGroup(
                title="Unit Attributes",
                content=_categories(values, construction=UNIT_CONSTRUCTION_FIELDS),
            )
        )
    else:
        values = merged_values(primary, condo, real_estate)
        groups.extend(
            AttributeGroup(title=c.title, content=c.content) for c in _categories(values)
        )

    groups.extend(common_groups(layers.outbuildings, sale))
    return PropertyAttributesSection(
        layout=layout, master_parcel_id=master_parcel_id, attribute_groups=groups
    )


# =============================================================================
# Record assembly
# =============================================================================


def historic_values(rows: list[ValueHistoryRow]) -> dict[int, float]:
    values: dict[int, float] = {}
    for row in rows:
        if row.fiscal_year and row.assessed_value is not None:
            values[row.fiscal_year] = row.assessed_value
    return values


def owner_names(rows: list[OwnerRow]) -> list[str]:
    names = [to_name_case(row.owner_name) for row in rows]
    return [n for n in names if n] or [OWNER_NOT_AVAILABLE]


def build_property_record(
    parcel_id: str, layers: PropertyLayers, now: date | datetime | None = None
) -> AggregatedPropertyRecord:
    """Merge typed layer rows into the record sections. Pure, no I/O.

    ``now`` decides whether an unbilled exemption reads as pending or not
    granted; it defaults to the current time.
    """
    now = now or datetime.now()
    real_estate = layers.real_estate[0] if layers.real_estate else RealEstateRow()
    tax = layers.taxes[0] if layers.taxes else TaxRow()

    residential_exemption = bool(tax.resex_amt and tax.resex_amt > 0)

    overview = OverviewSection(
        full_address=construct_full_address(real_estate.model_dump()),
        owners=owner_names(layers.owners),
        assessed_value=tax.total_assessed_value or 0,
        property_type_code=real_estate.property_type
        or real_estate.property_code_description
        or NOT_AVAILABLE,
        property_type_description=real_estate.property_class_description or NOT_AVAILABLE,
        land_use_code=real_estate.land_use or None,
        parcel_id=parcel_id,
        net_tax=tax.net_tax or 0,
        total_billed_amount=tax.total_billed_amt or 0,
        personal_exemption_flag=tax.personal_exemption_flag,
        residential_exemption_flag=residential_exemption,
        personal_exemption_amount=tax.persexempt_total or 0,
        residential_exemption_amount=tax.resex_amt or 0,
        residential_exemption_status=exemption_status(
            tax.resex_amt, bool(real_estate.residential_exemption_flag), now
        ),
        personal_exemption_status=exemption_status(
            tax.persexempt_total, bool(tax.personal_exemption_flag), now
        ),
    )

    taxes = PropertyTaxesSection(
        parcel_id=parcel_id,
        bill_number=tax.bill_number or None,
        bill_year=tax.bill_year or None,
        total_assessed_value=tax.total_assessed_value or 0,
        property_gross_tax=tax.gross_re_tax or 0,
        residential_exemption_flag=residential_exemption,
        personal_exemption_flag=tax.personal_exemption_flag,
        residential_exemption_amount=tax.resex_amt or 0,
        residential_exemption_value=tax.resex_value or 0,
        personal_exemption_amount=tax.persexempt_total or 0,
        personal_exemption_type_1=describe(tax.personal_ex_type_1) or None,
        personal_exemption_amount_1=tax.personal_ex_amt_1 or 0,
        personal_exemption_type_2=describe(tax.personal_ex_type_2) or None,
        personal_exemption_amount_2=tax.personal_ex_amt_2 or 0,
        community_preservation_amount=tax.cpa_tax or 0,
        property_net_tax=tax.net_tax or 0,
        net_real_estate_tax=tax.net_re_tax or 0,
        estimated_total_first_half=tax.net_re_tax or 0,
        total_billed_amount=tax.total_billed_amt or 0,
    )

    return AggregatedPropertyRecord(
        parcel_id=parcel_id,
        overview=overview,
        property_value=PropertyValueSection(
            historic_property_values=historic_values(layers.value_history)
        ),
        property_attributes=build_attributes_section(layers),
        property_taxes=taxes,
        geometry=layers.geometry,
    )


async def _optional(layer_name: str, parcel_id: str, fetch: Awaitable[list[EGISFeature]]) -> list[EGISFeature]:
    try:
        return await fetch
    except EGISRequestError:
        logger.warning(
            "%s query failed for parcel %s, continuing without it",
            layer_name, parcel_id, exc_info=True,
        )
        return []


async def fetch_property_layers(
    client: EGISClient, parcel_id: str, period: FiscalPeriod | None = None
) -> PropertyLayers:
    """Fetch every layer for a parcel concurrently and parse the rows."""
    if period:
        logger.info("Fetching parcel %s for FY%d quarter %s", parcel_id, period.year, period.quarter)
    else:
        logger.info("Fetching parcel %s using latest available data", parcel_id)

    (
        real_estate,
        geometry,
        history,
        owners,
        residential,
        condo,
        outbuildings,
        sales,
        taxes,
    ) = await asyncio.gather(
        client.query_parcel(REAL_ESTATE_LAYER, parcel_id, period),
        _optional(
            "Geometry",
            parcel_id,
            client.query_parcel(GEOMETRY_LAYER, parcel_id, return_geometry=True, out_fields="PID"),
        ),
        # Every fiscal year is kept for the value chart
        _optional(
            "Value history",
            parcel_id,
            client.query(VALUE_HISTORY_LAYER, parcel_where(VALUE_HISTORY_LAYER, parcel_id)),
        ),
        _optional("Owners", parcel_id, client.query_parcel(OWNERS_LAYER, parcel_id, period)),
        _optional(
            "Residential attributes",
            parcel_id,
            client.query_parcel(RESIDENTIAL_ATTRIBUTES_LAYER, parcel_id, period),
        ),
        _optional(
            "Condo attributes",
            parcel_id,
            client.query_parcel(CONDO_ATTRIBUTES_LAYER, parcel_id, period),
        ),
        _optional("Outbuildings", parcel_id, client.query_parcel(OUTBUILDINGS_LAYER, parcel_id, period)),
        _optional("Sales", parcel_id, client.query_parcel(SALES_LAYER, parcel_id)),
        _optional("Taxes", parcel_id, client.query_parcel(TAXES_LAYER, parcel_id, period)),
    )

    return PropertyLayers(
        real_estate=parse_rows(RealEstateRow, real_estate),
        value_history=parse_rows(ValueHistoryRow, history),
        owners=parse_rows(OwnerRow, owners),
        residential=parse_rows(ResidentialAttributesRow, residential),
        condo=parse_rows(CondoAttributesRow, condo),
        outbuildings=parse_rows(OutbuildingRow, outbuildings),
        sales=parse_rows(SaleRow, sales),
        taxes=parse_rows(TaxRow, taxes),
        geometry=geometry[0].geometry if geometry else None,
    )


def _is_empty(layers: PropertyLayers) -> bool:
    return layers.geometry is None and not any(
        (
            layers.real_estate,
            layers.value_history,
            layers.owners,
            layers.residential,
            layers.condo,
            layers.outbuildings,
            layers.sales,
            layers.taxes,
        )
    )


async def fetch_property_details(
    client: EGISClient,
    parcel_id: str,
    period: FiscalPeriod | None = None,
    now: date | datetime | None = None,
) -> AggregatedPropertyRecord:
    """Fetch and merge all layers for a parcel.

    A parcel missing from the real estate layer still gets a record, with a
    placeholder address, as long as some other layer knows it.

    Raises:
        PropertyNotFoundError: no layer has any row for the parcel.
        EGISRequestError: the real estate query exhausted its retries.
    """
    layers = await fetch_property_layers(client, parcel_id, period)
    if _is_empty(layers):
        raise PropertyNotFoundError(parcel_id)
    if not layers.real_estate:
        logger.warning("No real estate row for parcel %s, address not available", parcel_id)

    record = build_property_record(parcel_id, layers, now)
    logger.info(
        "Property details completed for %s: %d historic values, %d attribute groups",
        parcel_id,
        len(record.property_value.historic_property_values),
        len(record.property_attributes.attribute_groups),
    )
    return record


async def fetch_property_summaries(
    client: EGISClient, parcel_ids: list[str], period: FiscalPeriod | None = None
) -> list[PropertySummary]:
    """Address, first owner and assessed value for each requested parcel.

    Addresses always come from the latest real estate rows; ``period`` only
    pins owners and values. Parcels without a real estate row are reported
    with a placeholder address rather than dropped.
    """
    logger.info("Fetching property summaries for %d parcels", len(parcel_ids))

    addresses, owners, taxes = await asyncio.gather(
        client.query_parcel(REAL_ESTATE_LAYER, parcel_ids),
        _optional("Owners", ",".join(parcel_ids), client.query_parcel(OWNERS_LAYER, parcel_ids, period)),
        _optional("Taxes", ",".join(parcel_ids), client.query_parcel(TAXES_LAYER, parcel_ids, period)),
    )

    address_map = {row.parcel_id: row for row in parse_rows(RealEstateRow, addresses)}
    owner_map: dict[str | None, str] = {}
    for row in parse_rows(OwnerRow, owners):
        owner_map.setdefault(row.parcel_id, to_name_case(row.owner_name))
    value_map = {row.parcel_id: row.total_assessed_value for row in parse_rows(TaxRow, taxes)}

    results = []
    for parcel_id in parcel_ids:
        address = address_map.get(parcel_id)
        results.append(
            PropertySummary(
                parcel_id=parcel_id,
                full_address=construct_full_address(address.model_dump())
                if address
                else ADDRESS_NOT_AVAILABLE,
                owner=owner_map.get(parcel_id, ""),
                assessed_value=value_map.get(parcel_id) or 0,
            )
        )

    logger.info("Found %d property summaries", len(results))
    return results


async def fetch_parcel_address_pairings(client: EGISClient) -> list[ParcelAddressPairing]:
    """Every parcel id with its display address, from the geometry layer."""
    features = await client.query(GEOMETRY_LAYER, "1=1")
    pairings = [
        ParcelAddressPairing(
            parcel_id=str(f.attributes.get("parcel_id") or f.attributes.get("PID")),
            full_address=construct_full_address(f.attributes),
        )
        for f in features
        if f.attributes.get("parcel_id") or f.attributes.get("PID")
    ]
    logger.info("Fetched %d parcel id / address pairings", len(pairings))
    return pairings
