"""
N-central Migration Tool

Exports and migrates the configuration of an N-central service organization
(customers, sites, user roles, access groups, users and custom properties)
between two servers through the REST API, with the EI2 SOAP API as fallback.
"""

from __future__ import annotations

from .cli import main
from .client import ApiClient
from .exceptions import ApiError, MigrationError, SoapError
from .export import ExportOptions, ExportResult
from .migrator import IdMapping, MigrationOptions, MigrationResult, Migrator
from .session import ConnectionResult, MigrationSession
from .soap_client import SoapClient
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "ApiClient",
    "ApiError",
    "ConnectionResult",
    "ExportOptions",
    "ExportResult",
    "IdMapping",
    "MigrationError",
    "MigrationOptions",
    "MigrationResult",
    "MigrationSession",
    "Migrator",
    "SoapClient",
    "SoapError",
    "main",
    "setup_logging",
]
