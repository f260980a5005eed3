"""Exceptions raised by the property tax lookup service."""


class TaxLookupError(Exception):
    """Base exception for the service."""


class InputValidationError(TaxLookupError, ValueError):
    """Raised when a caller supplies a malformed parcel id, date or form type."""


class EGISRequestError(TaxLookupError):
    """Raised when an EGIS query still fails after every retry."""

    def __init__(self, message: str, url: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class PropertyNotFoundError(TaxLookupError):
    """Raised when no real estate record exists for a parcel id."""

    def __init__(self, parcel_id: str):
        super().__init__(f"Property not found: {parcel_id}")
        self.parcel_id = parcel_id
