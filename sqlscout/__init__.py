"""
sqlscout: find SQL Server instances by fusing DNS, ping, TCP, SQL Browser,
directory SPN and remote service evidence into confidence-ranked rows.
"""

from .finder import InstanceFinder
from .models import (
    Availability,
    Confidence,
    Credential,
    DiscoveryRequest,
    DiscoveryType,
    ScanReport,
    ScanType,
)

__version__ = "1.0.0"

__all__ = [
    "InstanceFinder",
    "Availability",
    "Confidence",
    "Credential",
    "DiscoveryRequest",
    "DiscoveryType",
    "ScanReport",
    "ScanType",
]
