"""Runtime settings for the property tax lookup service."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Boston Assessing map service (EGIS). Layers are numbered sub-resources.
DEFAULT_EGIS_BASE_URL = (
    "https://gisportal.boston.gov/arcgis/rest/services/Assessing/properties_boston_gov/MapServer"
)
DEFAULT_FISCAL_DATA_PATH = Path(__file__).parent / "fiscal_data.yaml"


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    egis_base_url: str = DEFAULT_EGIS_BASE_URL
    egis_page_size: int = 1000
    egis_max_retries: int = 3
    egis_timeout: float = 60.0
    fiscal_data_path: Path = DEFAULT_FISCAL_DATA_PATH
    database_url: str = "sqlite:///./taxlookup.db"
    cors_origins: list[str] = field(default_factory=list)
    time_travel_enabled: bool = False


def load_settings() -> Settings:
    return Settings(
        egis_base_url=os.getenv("EGIS_BASE_URL", DEFAULT_EGIS_BASE_URL).rstrip("/"),
        egis_page_size=int(os.getenv("EGIS_PAGE_SIZE", "1000")),
        egis_max_retries=int(os.getenv("EGIS_MAX_RETRIES", "3")),
        egis_timeout=float(os.getenv("EGIS_TIMEOUT", "60")),
        fiscal_data_path=Path(os.getenv("FISCAL_DATA_PATH", str(DEFAULT_FISCAL_DATA_PATH))),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./taxlookup.db"),
        cors_origins=_parse_csv(
            os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")
        ),
        time_travel_enabled=_parse_bool(os.getenv("TIME_TRAVEL_ENABLED"), False),
    )


settings = load_settings()
