"""Client for the City of Boston EGIS (ArcGIS REST) assessing map service.

The map service exposes one numbered layer per table. Each layer is queried
with ``/query?where=...&outFields=*&returnGeometry=...&f=json`` and pages
through ``resultOffset``/``resultRecordCount`` until the response no longer
sets ``exceededTransferLimit``.

Temporal keys by layer:

- fiscal_year + quarter: residential attributes (6), owners (7), condo
  attributes (9), outbuildings (10)
- fiscal_year only: value history (5), real estate (13)
- bill_year only: taxes (12)
- none: geometry (0), sales (11)

A layer may hold several versions of a parcel's rows. Unless an explicit
period is requested, only the latest version of each layer is kept.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .config import settings
from .exceptions import EGISRequestError
from .periods import FiscalPeriod

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 1.0


@dataclass(frozen=True)
class EGISLayer:
    """One versioned table of the map service."""

    layer_id: int
    name: str
    year_field: str | None = None
    has_quarter: bool = False
    parcel_field: str = "parcel_id"


GEOMETRY_LAYER = EGISLayer(0, "geometry", parcel_field="PID")
VALUE_HISTORY_LAYER = EGISLayer(
    5, "value_history", year_field="fiscal_year", parcel_field="Parcel_id"
)
RESIDENTIAL_ATTRIBUTES_LAYER = EGISLayer(
    6, "residential_attributes", year_field="fiscal_year", has_quarter=True
)
OWNERS_LAYER = EGISLayer(7, "owners", year_field="fiscal_year", has_quarter=True)
CONDO_ATTRIBUTES_LAYER = EGISLayer(
    9, "condo_attributes", year_field="fiscal_year", has_quarter=True
)
OUTBUILDINGS_LAYER = EGISLayer(10, "outbuildings", year_field="fiscal_year", has_quarter=True)
SALES_LAYER = EGISLayer(11, "sales")
TAXES_LAYER = EGISLayer(12, "taxes", year_field="bill_year")
REAL_ESTATE_LAYER = EGISLayer(13, "real_estate", year_field="fiscal_year")


class EGISFeature(BaseModel):
    """One row of a layer: loosely typed attributes plus optional geometry."""

    attributes: dict[str, Any] = Field(default_factory=dict)
    geometry: dict[str, Any] | None = None


class EGISQueryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    features: list[EGISFeature] = Field(default_factory=list)
    exceeded_transfer_limit: bool = Field(default=False, alias="exceededTransferLimit")


def _quarter_number(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _year_number(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def filter_latest(
    features: list[EGISFeature],
    year_field: str = "fiscal_year",
    has_quarter: bool = True,
) -> list[EGISFeature]:
    """Keep only the rows carrying the highest temporal key.

    With ``has_quarter`` the key is ``(year, quarter)`` compared year first.
    Rows without a usable year count as year 0.
    """
    if not features:
        return []

    def key(feature: EGISFeature) -> tuple[int, int]:
        attrs = feature.attributes
        q = _quarter_number(attrs.get("quarter")) if has_quarter else 0
        return _year_number(attrs.get(year_field)), q

    latest = max(key(f) for f in features)
    result = [f for f in features if key(f) == latest]

    if has_quarter:
        logger.debug(
            "Filtered %d features to %d (%s=%s Q%s)",
            len(features), len(result), year_field, latest[0], latest[1],
        )
    else:
        logger.debug(
            "Filtered %d features to %d (%s=%s)",
            len(features), len(result), year_field, latest[0],
        )
    return result


def filter_layer_latest(layer: EGISLayer, features: list[EGISFeature]) -> list[EGISFeature]:
    """Apply :func:`filter_latest` with the layer's own temporal key."""
    if layer.year_field is None:
        return features
    return filter_latest(features, year_field=layer.year_field, has_quarter=layer.has_quarter)


def latest_per_parcel(layer: EGISLayer, features: list[EGISFeature]) -> list[EGISFeature]:
    """Latest-version filter applied to each parcel's rows separately.

    Batched queries mix parcels whose latest versions need not agree.
    """
    if layer.year_field is None:
        return features
    groups: dict[Any, list[EGISFeature]] = {}
    for feature in features:
        groups.setdefault(feature.attributes.get(layer.parcel_field), []).append(feature)
    result: list[EGISFeature] = []
    for group in groups.values():
        result.extend(filter_layer_latest(layer, group))
    return result


def period_clause(layer: EGISLayer, period: FiscalPeriod) -> str | None:
    """Where-clause fragment pinning a layer to an explicit fiscal period."""
    if layer.year_field is None:
        return None
    clause = f"{layer.year_field}={period.year}"
    if layer.has_quarter:
        clause += f" AND quarter={period.quarter}"
    return clause


def parcel_where(layer: EGISLayer, parcel_ids: str | list[str]) -> str:
    """Build ``parcel_id='A' OR parcel_id='B'`` for a layer's parcel column."""
    if isinstance(parcel_ids, str):
        parcel_ids = [parcel_ids]
    conditions = " OR ".join(f"{layer.parcel_field}='{pid}'" for pid in parcel_ids)
    return conditions if len(parcel_ids) == 1 else f"({conditions})"


class EGISClient:
    """Paginating, retrying query client for the EGIS map service."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str = settings.egis_base_url,
        page_size: int = settings.egis_page_size,
        max_retries: int = settings.egis_max_retries,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_retries = max_retries
        self._sleep = sleep

    def layer_url(self, layer: EGISLayer) -> str:
        return f"{self.base_url}/{layer.layer_id}/query"

    async def _get_page(self, url: str, params: dict[str, Any]) -> EGISQueryResponse:
        """GET one page, retrying network errors and non-OK responses.

        Each failed attempt sleeps ``attempt`` seconds before the next one.
        """
        last_status: int | None = None
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self.http.get(url, params=params)
                if response.is_success:
                    payload = response.json()
                    if "error" not in payload:
                        return EGISQueryResponse.model_validate(payload)
                    last_error = EGISRequestError(
                        f"EGIS error payload: {payload['error']}", url=url
                    )
                    logger.warning("EGIS returned an error payload on attempt %d: %s", attempt, payload["error"])
                else:
                    last_status = response.status_code
                    logger.warning(
                        "EGIS request attempt %d returned HTTP %d for %s",
                        attempt, response.status_code, url,
                    )
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning("EGIS request attempt %d failed: %s", attempt, e)

            await self._sleep(RETRY_BACKOFF_SECONDS * attempt)

        raise EGISRequestError(
            f"Failed to fetch data after {self.max_retries} retries",
            url=url,
            status_code=last_status,
        ) from last_error

    async def query(
        self,
        layer: EGISLayer,
        where: str,
        return_geometry: bool = False,
        out_fields: str = "*",
    ) -> list[EGISFeature]:
        """Fetch every page of a layer query, sequentially."""
        url = self.layer_url(layer)
        all_features: list[EGISFeature] = []
        offset = 0
        request_count = 0

        logger.info("Querying EGIS layer %s (%d): %s", layer.name, layer.layer_id, where)

        while True:
            request_count += 1
            params = {
                "where": where,
                "outFields": out_fields,
                "returnGeometry": "true" if return_geometry else "false",
                "f": "json",
                "resultOffset": offset,
                "resultRecordCount": self.page_size,
            }
            logger.debug("Request #%d to %s with offset %d", request_count, url, offset)

            page = await self._get_page(url, params)
            if not page.features:
                break

            all_features.extend(page.features)

            if not page.exceeded_transfer_limit:
                break
            offset += len(page.features)

        logger.info(
            "EGIS layer %s completed: %d features in %d requests",
            layer.name, len(all_features), request_count,
        )
        return all_features

    async def query_parcel(
        self,
        layer: EGISLayer,
        parcel_ids: str | list[str],
        period: FiscalPeriod | None = None,
        return_geometry: bool = False,
        out_fields: str = "*",
    ) -> list[EGISFeature]:
        """Query a layer for one or more parcels, resolving the version.

        With an explicit ``period`` the query is pinned to it; otherwise only
        the latest version present in the layer is returned.
        """
        where = parcel_where(layer, parcel_ids)
        clause = period_clause(layer, period) if period else None
        if clause:
            where = f"{where} AND {clause}"

        features = await self.query(
            layer, where, return_geometry=return_geometry, out_fields=out_fields
        )
        if clause is None:
            features = latest_per_parcel(layer, features)
        return features
