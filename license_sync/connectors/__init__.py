"""Data connectors for the license sync service"""

from license_sync.connectors.base_connector import BaseConnector
from license_sync.connectors.license_api_connector import (
    ExternalLicenseApiConnector,
    LicenseApiError,
    classify_fetch_error,
)

__all__ = [
    "BaseConnector",
    "ExternalLicenseApiConnector",
    "LicenseApiError",
    "classify_fetch_error",
]
