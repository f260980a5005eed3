import os
from collections.abc import Callable
from typing import Any

# Ensure required env vars are set before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_taxlookup.db")
os.environ.setdefault("TIME_TRAVEL_ENABLED", "true")
os.environ.pop("LOGFIRE_TOKEN", None)

import httpx
import pytest
from fastapi.testclient import TestClient

from taxlookup import models  # noqa: F401
from taxlookup.database import Base, SessionLocal, engine
from taxlookup.egis import EGISClient
from taxlookup.main import app, get_egis_client

EGIS_BASE_URL = "https://egis.test/MapServer"
PARCEL_ID = "0504203000"


class FakeEGIS:
    """In-memory map service keyed by layer id.

    Rows are returned as a single page regardless of the where clause.
    Layers listed in ``failing`` answer every request with HTTP 500.
    """

    def __init__(self):
        self.layers: dict[int, list[dict[str, Any]]] = {}
        self.geometry: dict[str, Any] | None = None
        self.failing: set[int] = set()
        self.requests: list[httpx.Request] = []
        self.sleeps: list[float] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        layer_id = int(request.url.path.rstrip("/").split("/")[-2])
        if layer_id in self.failing:
            return httpx.Response(500, json={"message": "boom"})

        features = []
        for attrs in self.layers.get(layer_id, []):
            feature: dict[str, Any] = {"attributes": attrs}
            if request.url.params.get("returnGeometry") == "true":
                feature["geometry"] = self.geometry
            features.append(feature)
        return httpx.Response(200, json={"features": features})

    def wheres(self, layer_id: int) -> list[str]:
        return [
            r.url.params["where"]
            for r in self.requests
            if r.url.path.rstrip("/").split("/")[-2] == str(layer_id)
        ]

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def client(self, http: httpx.AsyncClient) -> EGISClient:
        return EGISClient(http, base_url=EGIS_BASE_URL, page_size=1000, max_retries=3, sleep=self.sleep)


def make_http(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def standard_property(fake: FakeEGIS, parcel_id: str = PARCEL_ID) -> FakeEGIS:
    """Populate a single-family house with one owner and a tax bill."""
    fake.layers[13] = [
        {
            "parcel_id": parcel_id,
            "fiscal_year": 2026,
            "street_number": "12",
            "street_number_suffix": "14",
            "street_name": "CENTRE ST",
            "apt_unit": "",
            "city": "JAMAICA PLAIN",
            "location_zip_code": "02130",
            "land_use": "R1 - ONE FAM DWELLING",
            "property_type": "101",
            "property_class_description": "Residential",
        }
    ]
    fake.layers[5] = [
        {"Parcel_id": parcel_id, "fiscal_year": 2025, "assessed_value": 700000},
        {"Parcel_id": parcel_id, "fiscal_year": 2026, "assessed_value": 750000},
    ]
    fake.layers[7] = [
        {"parcel_id": parcel_id, "fiscal_year": 2026, "quarter": "3", "owner_name": "SMITH JOHN"},
    ]
    fake.layers[6] = [
        {
            "parcel_id": parcel_id,
            "fiscal_year": 2026,
            "quarter": "3",
            "composite_land_use": "R1 - ONE FAM DWELLING",
            "building_style": "CL - COLONIAL",
            "bedrooms": 3,
            "full_bath": 2,
            "half_bath": 1,
            "year_built": 1920,
        }
    ]
    fake.layers[12] = [
        {
            "parcel_id": parcel_id,
            "bill_year": 2026,
            "bill_number": "12345",
            "total_assessed_value": 750000,
            "gross_re_tax": 9765,
            "net_tax": 7000,
            "net_re_tax": 7000,
            "total_billed_amt": 7100,
            "resex_amt": 2765,
        }
    ]
    fake.layers[11] = [
        {"parcel_id": parcel_id, "latest_sales_price": 1250000, "latest_sales_date": "2019-05-01"},
    ]
    fake.layers[0] = [{"PID": parcel_id}]
    fake.geometry = {"rings": [[[0, 0], [1, 0], [1, 1], [0, 0]]]}
    return fake


@pytest.fixture
def fake_egis() -> FakeEGIS:
    return FakeEGIS()


@pytest.fixture
async def egis_client(fake_egis):
    async with make_http(fake_egis.handler) as http:
        yield fake_egis.client(http)


@pytest.fixture
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db(reset_db):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(fake_egis, reset_db):
    async def override_egis_client():
        async with make_http(fake_egis.handler) as http:
            yield fake_egis.client(http)

    app.dependency_overrides[get_egis_client] = override_egis_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
