"""FastAPI application for the Boston property tax lookup service."""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date, datetime
from functools import lru_cache
from typing import Any

import httpx
import logfire
from fastapi import Depends, FastAPI, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.requests import Request

from .aggregation import fetch_property_details, fetch_property_summaries
from .config import Settings, settings
from .database import get_db, init_db
from .egis import EGISClient
from .exceptions import EGISRequestError, InputValidationError, PropertyNotFoundError
from .fiscal_data import FiscalConfigResolver, TaxRates, format_tax_rate, load_fiscal_config
from .forms import (
    FormPrefillData,
    FormType,
    application_number,
    build_form_data,
    determine_form_type,
    get_cached_pdf,
    next_abatement_sequence_number,
    pdf_file_name,
    record_pdf,
)
from .periods import (
    ExemptionType,
    PhaseResult,
    abatement_reference_year,
    all_timepoints,
    classify_abatement,
    classify_exemption,
    current_period,
    fiscal_year_and_quarter,
    is_preliminary_period,
)
from .schemas import (
    AggregatedPropertyRecord,
    FormRequest,
    ParcelIdsRequest,
    PropertySummary,
    parse_request_date,
    validate_parcel_id,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Boston Property Tax Lookup API",
    description="Property values, exemptions, abatements and tax bills for Boston parcels",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if os.getenv("LOGFIRE_TOKEN"):
    logfire.configure()
    logfire.instrument_fastapi(app)
    logfire.instrument_httpx()

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error mapping
# =============================================================================


@app.exception_handler(InputValidationError)
async def input_validation_error_handler(request: Request, exc: InputValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"detail": errors})


@app.exception_handler(PropertyNotFoundError)
async def property_not_found_handler(request: Request, exc: PropertyNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(EGISRequestError)
async def egis_request_error_handler(request: Request, exc: EGISRequestError):
    logger.error("EGIS request failed: %s (url=%s, status=%s)", exc, exc.url, exc.status_code)
    return JSONResponse(
        status_code=502,
        content={"detail": "Property data service is unavailable, please try again later"},
    )


# =============================================================================
# Dependencies
# =============================================================================


def get_settings() -> Settings:
    return settings


@lru_cache
def _default_fiscal_resolver() -> FiscalConfigResolver:
    return FiscalConfigResolver(load_fiscal_config(settings.fiscal_data_path))


def get_fiscal_resolver() -> FiscalConfigResolver:
    return _default_fiscal_resolver()


async def get_egis_client() -> AsyncGenerator[EGISClient, None]:
    """One pooled HTTP client per request, closed when the response is sent."""
    async with httpx.AsyncClient(timeout=settings.egis_timeout) as http:
        yield EGISClient(
            http,
            base_url=settings.egis_base_url,
            page_size=settings.egis_page_size,
            max_retries=settings.egis_max_retries,
        )


def get_now(
    date_param: str | None = Query(default=None, alias="date", description="YYYY-MM-DD"),
    app_settings: Settings = Depends(get_settings),
) -> datetime:
    """The moment being evaluated: today, or a chosen date when time travel is on."""
    if date_param is None:
        return datetime.now()
    if not app_settings.time_travel_enabled:
        raise InputValidationError("The date parameter requires TIME_TRAVEL_ENABLED")
    parsed = parse_request_date(date_param)
    return datetime(parsed.year, parsed.month, parsed.day)


# =============================================================================
# Response models
# =============================================================================


class PhaseResponse(BaseModel):
    phase: str
    message_params: dict[str, Any]
    deadline: datetime | None = None
    is_preliminary: bool

    @classmethod
    def from_result(cls, result: PhaseResult) -> "PhaseResponse":
        return cls(
            phase=result.phase.value,
            message_params=dict(result.message_params),
            deadline=result.deadline,
            is_preliminary=result.is_preliminary,
        )


class TimepointResponse(BaseModel):
    label: str
    date: datetime


class PeriodsResponse(BaseModel):
    now: datetime
    fiscal_year: int
    quarter: str
    is_preliminary_period: bool
    abatement_reference_year: int
    abatement: PhaseResponse
    residential_exemption: PhaseResponse
    personal_exemption: PhaseResponse
    timeline: list[TimepointResponse]
    current_period_from: TimepointResponse
    current_period_to: TimepointResponse | None = None


class FiscalDataResponse(BaseModel):
    fiscal_year: int
    quarter: str
    tax_rates: TaxRates
    residential_rate_display: str
    commercial_rate_display: str
    owner_disclaimer_date: str
    owner_disclaimer: str
    available_fiscal_years: list[int]


class PropertySummariesResponse(BaseModel):
    results: list[PropertySummary]


class FormMetadata(BaseModel):
    parcel_id: str
    fiscal_year: int
    cached: bool


class FormResponse(BaseModel):
    form_type: FormType
    form_subtype: str | None = None
    storage_path: str
    file_name: str
    prefill: FormPrefillData
    metadata: FormMetadata


# =============================================================================
# Endpoints
# =============================================================================


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Boston Property Tax Lookup API"}


@app.get("/api/periods", response_model=PeriodsResponse)
async def get_periods(now: datetime = Depends(get_now)):
    """Fiscal period, abatement and exemption phases, and the year's timeline."""
    period = fiscal_year_and_quarter(now)
    reference_year = abatement_reference_year(now)
    timeline = all_timepoints(now.year)
    period_from, period_to = current_period(now, timeline)

    return PeriodsResponse(
        now=now,
        fiscal_year=period.year,
        quarter=period.quarter,
        is_preliminary_period=is_preliminary_period(now),
        abatement_reference_year=reference_year,
        abatement=PhaseResponse.from_result(classify_abatement(now, reference_year)),
        residential_exemption=PhaseResponse.from_result(
            classify_exemption(now, now.year, ExemptionType.RESIDENTIAL)
        ),
        personal_exemption=PhaseResponse.from_result(
            classify_exemption(now, now.year, ExemptionType.PERSONAL)
        ),
        timeline=[TimepointResponse(label=t.label, date=t.date) for t in timeline],
        current_period_from=TimepointResponse(label=period_from.label, date=period_from.date),
        current_period_to=(
            TimepointResponse(label=period_to.label, date=period_to.date) if period_to else None
        ),
    )


@app.get("/api/fiscal-data", response_model=FiscalDataResponse)
async def get_fiscal_data(
    now: datetime = Depends(get_now),
    resolver: FiscalConfigResolver = Depends(get_fiscal_resolver),
):
    """Tax rates and owner disclaimer in effect on the evaluated date."""
    period = fiscal_year_and_quarter(now)
    rates = resolver.get_tax_rates(period.year)
    return FiscalDataResponse(
        fiscal_year=period.year,
        quarter=period.quarter,
        tax_rates=rates,
        residential_rate_display=format_tax_rate(rates.residential),
        commercial_rate_display=format_tax_rate(rates.commercial),
        owner_disclaimer_date=resolver.get_owner_disclaimer_date(now),
        owner_disclaimer=resolver.owner_disclaimer(now),
        available_fiscal_years=resolver.available_fiscal_years(),
    )


@app.get("/api/properties/{parcel_id}", response_model=AggregatedPropertyRecord)
async def get_property(
    parcel_id: str,
    date_param: str | None = Query(default=None, alias="date", description="YYYY-MM-DD"),
    client: EGISClient = Depends(get_egis_client),
):
    """Aggregated property record.

    A date pins every layer to its fiscal period and is the instant the
    exemption statuses are judged at.
    """
    parcel_id = validate_parcel_id(parcel_id)
    requested = parse_request_date(date_param)
    period = fiscal_year_and_quarter(requested) if requested else None
    return await fetch_property_details(client, parcel_id, period, now=requested)


@app.post("/api/properties/summaries", response_model=PropertySummariesResponse)
async def post_property_summaries(
    request: ParcelIdsRequest,
    client: EGISClient = Depends(get_egis_client),
):
    """Search-result summaries for up to 500 parcels."""
    requested = parse_request_date(request.date)
    period = fiscal_year_and_quarter(requested) if requested else None
    results = await fetch_property_summaries(client, request.parcel_ids, period)
    return PropertySummariesResponse(results=results)


@app.post("/api/forms", response_model=FormResponse)
async def post_form(
    request: FormRequest,
    client: EGISClient = Depends(get_egis_client),
    db: Session = Depends(get_db),
):
    """Prepare prefill data for an exemption or abatement form.

    Forms are cached per fiscal year; an abatement gets its application
    number when first generated and keeps it for cached responses.
    """
    form_date: date = parse_request_date(request.date) or date.today()
    fiscal_year = fiscal_year_and_quarter(form_date).year
    form_type = FormType(request.form_type)

    logger.info(
        "Preparing %s form for parcel %s, FY%d", form_type.value, request.parcel_id, fiscal_year
    )

    record = await fetch_property_details(client, request.parcel_id)
    specific = determine_form_type(record.overview.property_type_code, form_type)

    entry = get_cached_pdf(db, request.parcel_id, specific, fiscal_year)
    cached = entry is not None
    if entry is not None:
        logger.info("Form found in cache: %s", entry.storage_path)
        app_number = entry.application_number
    else:
        app_number = None
        if form_type is FormType.ABATEMENT:
            sequence = next_abatement_sequence_number(db, fiscal_year)
            app_number = application_number(fiscal_year, sequence)
            logger.info("Generated application number %s", app_number)
        entry = record_pdf(db, request.parcel_id, specific, fiscal_year, app_number)

    return FormResponse(
        form_type=form_type,
        form_subtype=specific.subtype,
        storage_path=entry.storage_path,
        file_name=pdf_file_name(request.parcel_id, specific),
        prefill=build_form_data(record, form_date, app_number),
        metadata=FormMetadata(
            parcel_id=request.parcel_id,
            fiscal_year=fiscal_year,
            cached=cached,
        ),
    )
