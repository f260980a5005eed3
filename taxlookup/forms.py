"""Prefill data and cache bookkeeping for exemption and abatement PDF forms.

Filled forms are cached per (parcel, specific form type, fiscal year): the
fiscal year of the request date partitions the cache, so a new form is only
generated once the fiscal year rolls over. Abatement applications also get an
application number, the fiscal year followed by a per-year sequence number.
"""

import logging
import re
from datetime import date, datetime
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .exceptions import InputValidationError
from .models import FIRST_ABATEMENT_SEQUENCE, AbatementSequence, PdfCacheEntry
from .schemas import AggregatedPropertyRecord

logger = logging.getLogger(__name__)

PDF_STORAGE_PREFIX = "generated-pdfs"
DEFAULT_PROPERTY_TYPE_CODE = "101"
ZIP_PATTERN = re.compile(r"^\d{5}$")
STREET_PATTERN = re.compile(r"^([\d-]+)\s+(.+)$")


class FormType(str, Enum):
    """Form a taxpayer asks for."""

    RESIDENTIAL = "residential"
    PERSONAL = "personal"
    ABATEMENT = "abatement"


class SpecificFormType(str, Enum):
    """Template actually filled; abatements come in a short and a long form."""

    RESIDENTIAL = "residential"
    PERSONAL = "personal"
    ABATEMENT_SHORT = "abatement_short"
    ABATEMENT_LONG = "abatement_long"

    @property
    def subtype(self) -> str | None:
        if self.value.startswith("abatement_"):
            return self.value.split("_", 1)[1]
        return None


def parse_form_type(value: str | FormType) -> FormType:
    try:
        return FormType(value)
    except ValueError as e:
        raise InputValidationError(
            "formType must be one of: residential, personal, abatement"
        ) from e


def determine_form_type(property_type_code: str | None, form_type: str | FormType) -> SpecificFormType:
    """Pick the template for a request.

    Exemption requests map one to one. Abatements for residential class codes
    (leading ``1``, or ``0`` for mixed-use residential) use the short form,
    everything else the long form. A missing code counts as ``101``.
    """
    form_type = parse_form_type(form_type)
    if form_type is FormType.RESIDENTIAL:
        return SpecificFormType.RESIDENTIAL
    if form_type is FormType.PERSONAL:
        return SpecificFormType.PERSONAL

    code = (property_type_code or "").strip()
    if not code or not code[0].isdigit():
        code = DEFAULT_PROPERTY_TYPE_CODE
    if code[0] in ("0", "1"):
        return SpecificFormType.ABATEMENT_SHORT
    return SpecificFormType.ABATEMENT_LONG


# =============================================================================
# Prefill data
# =============================================================================


class AddressParts(NamedTuple):
    street_address: str
    zip_code: str | None
    street_number: str | None
    street_name: str | None


def split_full_address(full_address: str) -> AddressParts:
    """Split ``"12-14 Main St #3, Boston, 02118"`` into form fields."""
    parts = full_address.split(", ")
    zip_code = None

    if len(parts) >= 3:
        street_address = parts[0]
        zip_code = parts[-1]
    elif len(parts) == 2:
        street_address = parts[0]
        if ZIP_PATTERN.match(parts[1].strip()):
            zip_code = parts[1].strip()
    else:
        street_address = full_address

    street_number = street_name = None
    match = STREET_PATTERN.match(street_address)
    if match:
        street_number, street_name = match.group(1), match.group(2)

    return AddressParts(street_address, zip_code, street_number, street_name)


def split_owner_name(owner: str) -> tuple[str | None, str | None]:
    """Return ``(first, last)`` from ``"Last, First"`` or ``"First Middle Last"``."""
    owner = owner.strip()
    if not owner:
        return None, None
    if "," in owner:
        last, _, first = owner.partition(",")
        return first.strip() or None, last.strip() or None
    names = owner.split()
    if len(names) > 1:
        return " ".join(names[:-1]), names[-1]
    return None, names[0]


def format_form_date(value: date | datetime) -> str:
    return f"{value.month:02d}/{value.day:02d}/{value.year}"


class FormPrefillData(BaseModel):
    """Values written into the PDF form fields."""

    parcel_id: str
    owner: list[str]
    address: str = Field(description="Street address line only, no city or ZIP")
    zip_code: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    date: str = Field(description="MM/DD/YYYY")
    assessed_value: float = 0
    property_type_code: str | None = None
    application_number: str | None = None
    class_code: str = ""
    street_number: str | None = None
    street_name: str | None = None


def build_form_data(
    record: AggregatedPropertyRecord,
    form_date: date | datetime,
    application_number: str | None = None,
) -> FormPrefillData:
    overview = record.overview
    address = split_full_address(overview.full_address)
    first_name, last_name = split_owner_name(overview.owners[0]) if overview.owners else (None, None)

    return FormPrefillData(
        parcel_id=record.parcel_id,
        owner=overview.owners,
        address=address.street_address,
        zip_code=address.zip_code,
        first_name=first_name,
        last_name=last_name,
        date=format_form_date(form_date),
        assessed_value=overview.assessed_value,
        property_type_code=overview.property_type_code,
        application_number=application_number,
        class_code=overview.land_use_code or "",
        street_number=address.street_number,
        street_name=address.street_name,
    )


# =============================================================================
# Cache index and sequence numbers
# =============================================================================


def pdf_storage_path(parcel_id: str, form_type: str | SpecificFormType, fiscal_year: int) -> str:
    form_type = form_type.value if isinstance(form_type, SpecificFormType) else form_type
    return f"{PDF_STORAGE_PREFIX}/{fiscal_year}/{parcel_id}/{form_type}.pdf"


def pdf_file_name(parcel_id: str, form_type: str | SpecificFormType) -> str:
    form_type = form_type.value if isinstance(form_type, SpecificFormType) else form_type
    return f"{form_type}-form-{parcel_id}.pdf"


def get_cached_pdf(
    db: Session, parcel_id: str, form_type: str | SpecificFormType, fiscal_year: int
) -> PdfCacheEntry | None:
    form_type = form_type.value if isinstance(form_type, SpecificFormType) else form_type
    return db.query(PdfCacheEntry).filter(
        PdfCacheEntry.parcel_id == parcel_id,
        PdfCacheEntry.form_type == form_type,
        PdfCacheEntry.fiscal_year == fiscal_year,
    ).first()


def record_pdf(
    db: Session,
    parcel_id: str,
    form_type: str | SpecificFormType,
    fiscal_year: int,
    application_number: str | None = None,
) -> PdfCacheEntry:
    """Index a stored PDF, replacing any previous entry for the same key."""
    form_type = form_type.value if isinstance(form_type, SpecificFormType) else form_type
    entry = get_cached_pdf(db, parcel_id, form_type, fiscal_year)
    if entry is None:
        entry = PdfCacheEntry(parcel_id=parcel_id, form_type=form_type, fiscal_year=fiscal_year)
        db.add(entry)
    entry.storage_path = pdf_storage_path(parcel_id, form_type, fiscal_year)
    entry.application_number = application_number
    db.commit()
    db.refresh(entry)
    logger.info("Recorded PDF %s", entry.storage_path)
    return entry


def _issue_sequence_number(db: Session, fiscal_year: int) -> int:
    by_year = AbatementSequence.fiscal_year == fiscal_year
    if db.query(AbatementSequence.fiscal_year).filter(by_year).first() is None:
        db.add(AbatementSequence(fiscal_year=fiscal_year, counter=FIRST_ABATEMENT_SEQUENCE))
        db.flush()

    # Single-statement increment, so concurrent requests never read the same counter
    db.query(AbatementSequence).filter(by_year).update(
        {AbatementSequence.counter: AbatementSequence.counter + 1}, synchronize_session=False
    )
    counter = db.query(AbatementSequence.counter).filter(by_year).scalar()
    db.commit()
    return counter - 1


def next_abatement_sequence_number(db: Session, fiscal_year: int, attempts: int = 3) -> int:
    """Issue the next abatement sequence number for ``fiscal_year``.

    The first number of every fiscal year is 10001. When two requests create
    the year's counter at the same time, the loser rolls back and retries
    against the winner's row.
    """
    attempt = 1
    while True:
        try:
            current = _issue_sequence_number(db, fiscal_year)
            break
        except IntegrityError:
            db.rollback()
            if attempt >= attempts:
                raise
            logger.warning(
                "Sequence counter for FY%d created concurrently, retrying (attempt %d/%d)",
                fiscal_year, attempt, attempts,
            )
            attempt += 1

    logger.info("Generated sequence number %d for FY%d", current, fiscal_year)
    return current


def application_number(fiscal_year: int, sequence_number: int) -> str:
    return f"{fiscal_year}{sequence_number}"


def current_sequence_counter(db: Session, fiscal_year: int) -> int | None:
    """Next number to be issued, without issuing it. None before the first."""
    sequence = db.query(AbatementSequence).filter(
        AbatementSequence.fiscal_year == fiscal_year
    ).first()
    return sequence.counter if sequence else None
