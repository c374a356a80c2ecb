"""
Checkers backed by external services.

- directory: Active Directory SPN and server sweeps (ldap3)
- services: remote SQL Server service enumeration (PowerShell CIM)
- sqlconnect: authenticated connection probe (pyodbc)

Each one reports failure as a typed outcome or a dedicated exception so the
scanner can treat it as "no evidence".
"""

from .directory import DirectoryClient, DirectoryError, parse_spn
from .services import ServiceQueryError, classify_service, enumerate_services
from .sqlconnect import ConnectionOutcome, ConnectionResult, SqlConnector

__all__ = [
    "DirectoryClient",
    "DirectoryError",
    "parse_spn",
    "ServiceQueryError",
    "classify_service",
    "enumerate_services",
    "ConnectionOutcome",
    "ConnectionResult",
    "SqlConnector",
]
