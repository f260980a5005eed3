"""Fiscal year configuration: tax rates and owner disclaimer dates.

The configuration table is loaded once (normally from ``fiscal_data.yaml``)
and handed to a :class:`FiscalConfigResolver`. Lookups never fail for an
unconfigured year:

- a configured year returns its own values
- a year after the latest configured year reuses the latest values, on the
  assumption that rates have not been updated yet
- any other year (a gap, or before the earliest year) gets the static
  defaults, since historical rates must not be guessed
"""

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .periods import fiscal_year as fiscal_year_of, is_preliminary_period

logger = logging.getLogger(__name__)


class TaxRates(BaseModel):
    """Tax rates in dollars per $1,000 of assessed value."""

    model_config = ConfigDict(frozen=True)

    residential: float = Field(ge=0)
    commercial: float = Field(ge=0)


class OwnerDisclaimerDates(BaseModel):
    model_config = ConfigDict(frozen=True)

    q1: str | None = Field(default=None, description="Shown July through December")
    q3: str | None = Field(default=None, description="Shown January through June")


class FiscalYearData(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tax_rates: TaxRates | None = Field(default=None, alias="taxRates")
    owner_disclaimer_dates: OwnerDisclaimerDates | None = Field(
        default=None, alias="ownerDisclaimerDates"
    )


class FiscalDefaults(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tax_rates: TaxRates = Field(alias="taxRates")
    owner_disclaimer_date: str = Field(alias="ownerDisclaimerDate")


class FiscalDataConfig(BaseModel):
    """The whole configuration table, keyed by fiscal year."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    fiscal_years: dict[int, FiscalYearData] = Field(default_factory=dict, alias="fiscalYears")
    defaults: FiscalDefaults


def load_fiscal_config(path: str | Path) -> FiscalDataConfig:
    """Parse and validate a fiscal data YAML file."""
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    config = FiscalDataConfig.model_validate(raw)
    logger.info(
        "Loaded fiscal data for %d fiscal years from %s",
        len(config.fiscal_years),
        path,
    )
    return config


def format_tax_rate(rate: float) -> str:
    """Format a rate like ``$11.58 per $1,000``."""
    return f"${rate:.2f} per $1,000"


class FiscalConfigResolver:
    """Resolves per-fiscal-year tax rates and owner disclaimer dates."""

    def __init__(self, config: FiscalDataConfig):
        self.config = config

    def latest_fiscal_year(self) -> int | None:
        if not self.config.fiscal_years:
            return None
        return max(self.config.fiscal_years)

    def available_fiscal_years(self) -> list[int]:
        return sorted(self.config.fiscal_years)

    def has_tax_rates(self, fiscal_year: int) -> bool:
        year_data = self.config.fiscal_years.get(fiscal_year)
        return year_data is not None and year_data.tax_rates is not None

    def _beyond_latest(self, fiscal_year: int) -> FiscalYearData | None:
        latest = self.latest_fiscal_year()
        if latest is not None and fiscal_year > latest:
            return self.config.fiscal_years[latest]
        return None

    def get_tax_rates(self, fiscal_year: int) -> TaxRates:
        year_data = self.config.fiscal_years.get(fiscal_year)
        if year_data and year_data.tax_rates:
            return year_data.tax_rates

        latest_data = self._beyond_latest(fiscal_year)
        if latest_data and latest_data.tax_rates:
            return latest_data.tax_rates

        return self.config.defaults.tax_rates

    def residential_rate(self, fiscal_year: int) -> float:
        return self.get_tax_rates(fiscal_year).residential

    def commercial_rate(self, fiscal_year: int) -> float:
        return self.get_tax_rates(fiscal_year).commercial

    def get_owner_disclaimer_date(self, value: date | datetime) -> str:
        """Disclaimer date string in effect on ``value``.

        The half-year bucket is ``q1`` for July-December and ``q3`` for
        January-June. Past the latest configured year the most recent update
        (``q3``, else ``q1``) of that year is used.
        """
        fy = fiscal_year_of(value)
        bucket: Literal["q1", "q3"] = "q1" if is_preliminary_period(value) else "q3"

        year_data = self.config.fiscal_years.get(fy)
        if year_data and year_data.owner_disclaimer_dates:
            configured = getattr(year_data.owner_disclaimer_dates, bucket)
            if configured:
                return configured

        latest_data = self._beyond_latest(fy)
        if latest_data and latest_data.owner_disclaimer_dates:
            dates = latest_data.owner_disclaimer_dates
            if dates.q3:
                return dates.q3
            if dates.q1:
                return dates.q1

        return self.config.defaults.owner_disclaimer_date

    def owner_disclaimer(self, value: date | datetime) -> str:
        disclaimer_date = self.get_owner_disclaimer_date(value)
        return (
            "Owner information may not reflect any changes submitted to the City of "
            f"Boston's Assessing Department after {disclaimer_date}."
        )
