"""
Data model for SQL Server instance discovery.

Probe results are immutable and tied to a single target. A ScanReport is the
externally visible row built by the fusion step.
"""
from __future__ import annotations
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, Flag, IntEnum, auto
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_INSTANCE = "MSSQLSERVER"


class Confidence(IntEnum):
    """How certain we are that a row is a real SQL Server endpoint."""
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @classmethod
    def parse(cls, value: Any) -> "Confidence":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown confidence level '{value}'. Use one of: None, Low, Medium, High.")

    @property
    def label(self) -> str:
        return self.name.capitalize()


class Availability(Enum):
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"
    UNKNOWN = "Unknown"


class ScanType(Flag):
    """Probe kinds the caller can enable for each host."""
    BROWSER = auto()
    SQL_SERVICE = auto()
    SPN = auto()
    TCP_PORT = auto()
    DNS_RESOLVE = auto()
    SQL_CONNECT = auto()
    PING = auto()
    DEFAULT = BROWSER | SQL_SERVICE | SPN | TCP_PORT | DNS_RESOLVE | PING
    ALL = DEFAULT | SQL_CONNECT


class DiscoveryType(Flag):
    """Sources that expand a discovery request into hosts."""
    IP_RANGE = auto()
    DOMAIN_SPN = auto()
    DOMAIN_SERVER = auto()
    DATA_SOURCE_ENUMERATION = auto()
    ALL = IP_RANGE | DOMAIN_SPN | DOMAIN_SERVER | DATA_SOURCE_ENUMERATION


def _normalize_flag_name(name: str) -> str:
    return "".join(c for c in name.upper() if c.isalnum())


# Accepts both "SqlConnect" and "SQL_CONNECT" style names.
_SCAN_TYPE_ALIASES = {_normalize_flag_name(m.name): m for m in ScanType.__members__.values()}
_SCAN_TYPE_ALIASES.update({"SQLSERVICE": ScanType.SQL_SERVICE, "SERVICE": ScanType.SQL_SERVICE,
                           "DNS": ScanType.DNS_RESOLVE, "TCP": ScanType.TCP_PORT})
_DISCOVERY_ALIASES = {_normalize_flag_name(m.name): m for m in DiscoveryType.__members__.values()}
_DISCOVERY_ALIASES.update({"DOMAIN": DiscoveryType.DOMAIN_SERVER,
                           "DATASOURCE": DiscoveryType.DATA_SOURCE_ENUMERATION,
                           "BROADCAST": DiscoveryType.DATA_SOURCE_ENUMERATION})


def parse_scan_types(names: Any) -> ScanType:
    """Combines scan type names (or an existing ScanType) into one flag value."""
    if isinstance(names, ScanType):
        return names
    if isinstance(names, str):
        names = [names]
    result = ScanType(0)
    for name in names or []:
        member = _SCAN_TYPE_ALIASES.get(_normalize_flag_name(str(name)))
        if member is None:
            raise ValueError(f"Unknown scan type '{name}'.")
        result |= member
    return result or ScanType.DEFAULT


def parse_discovery_types(names: Any) -> DiscoveryType:
    if isinstance(names, DiscoveryType):
        return names
    if isinstance(names, str):
        names = [names]
    result = DiscoveryType(0)
    for name in names or []:
        member = _DISCOVERY_ALIASES.get(_normalize_flag_name(str(name)))
        if member is None:
            raise ValueError(f"Unknown discovery type '{name}'.")
        result |= member
    return result


class ServiceType(Enum):
    ENGINE = "Engine"
    AGENT = "Agent"
    BROWSER = "Browser"
    FULL_TEXT = "FullText"
    SSAS = "SSAS"
    SSIS = "SSIS"
    SSRS = "SSRS"
    POLYBASE = "PolyBase"
    LAUNCHPAD = "Launchpad"
    TELEMETRY = "Telemetry"
    VSS_WRITER = "VSS Writer"
    OTHER = "Other"


@dataclass(frozen=True)
class ScanTarget:
    """A single host identity to probe."""
    host: str
    resolved: bool = False


@dataclass(frozen=True)
class DnsResult:
    host: str
    host_name: str
    aliases: Tuple[str, ...] = ()
    ip_addresses: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PingResult:
    host: str
    success: bool
    latency_ms: Optional[float] = None


@dataclass(frozen=True)
class PortResult:
    """Represents the status of a single probed TCP port."""
    host: str
    port: int
    is_open: bool


@dataclass(frozen=True)
class BrowserReply:
    """One instance record from a SQL Server Browser (SSRP) response."""
    machine_name: str
    computer_name: str
    instance_name: str
    tcp_port: Optional[int]
    version: str
    is_clustered: bool

    @property
    def sql_instance(self) -> str:
        if self.instance_name.upper() == DEFAULT_INSTANCE:
            return self.computer_name
        return f"{self.computer_name}\\{self.instance_name}"


@dataclass(frozen=True)
class ServiceInfo:
    """A SQL Server related OS service on a remote host.

    `instance_name` is empty for services that are not tied to an instance,
    such as the Browser or the VSS writer.
    """
    computer_name: str
    service_name: str
    instance_name: str
    service_type: ServiceType
    state: str
    display_name: str = ""
    start_mode: str = ""


@dataclass
class InstanceEvidence:
    """Everything collected for one host during a scan pass."""
    target: ScanTarget
    scan_types: ScanType
    dns: Optional[DnsResult] = None
    ping: Optional[PingResult] = None
    spns: List[str] = field(default_factory=list)
    ports: List[PortResult] = field(default_factory=list)
    browser_replies: List[BrowserReply] = field(default_factory=list)
    services: List[ServiceInfo] = field(default_factory=list)

    @property
    def reachable(self) -> bool:
        return self.dns is not None or bool(self.ping and self.ping.success)

    @property
    def open_ports(self) -> List[int]:
        return [p.port for p in self.ports if p.is_open]

    @property
    def computer_name(self) -> str:
        """Short host name, taken from DNS when it resolved."""
        if self.dns and self.dns.host_name:
            name = self.dns.host_name
        else:
            name = self.target.host
        if _looks_like_ip(name):
            return name
        return name.split(".")[0]


def _looks_like_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


@dataclass
class ScanReport:
    """A discovered host, instance or port with its supporting evidence."""
    machine_name: str
    computer_name: str
    scan_types: ScanType
    timestamp: datetime
    instance_name: Optional[str] = None
    port: Optional[int] = None
    dns_resolution: Optional[DnsResult] = None
    ping: bool = False
    services: List[ServiceInfo] = field(default_factory=list)
    system_services: List[ServiceInfo] = field(default_factory=list)
    spns: List[str] = field(default_factory=list)
    browse_reply: Optional[BrowserReply] = None
    ports_scanned: List[PortResult] = field(default_factory=list)
    tcp_connected: bool = False
    sql_connected: bool = False
    confidence: Confidence = Confidence.NONE
    availability: Availability = Availability.UNKNOWN

    @property
    def full_name(self) -> str:
        """Address used to connect to this row: HOST, HOST\\INSTANCE or HOST,PORT."""
        if self.instance_name and self.instance_name.upper() != DEFAULT_INSTANCE:
            return f"{self.computer_name}\\{self.instance_name}"
        if self.port and not self.instance_name:
            return f"{self.computer_name},{self.port}"
        return self.computer_name

    def raise_confidence(self, level: Confidence) -> None:
        if level > self.confidence:
            self.confidence = level

    def to_dict(self) -> Dict[str, Any]:
        return {
            "MachineName": self.machine_name,
            "ComputerName": self.computer_name,
            "InstanceName": self.instance_name,
            "FullName": self.full_name,
            "Port": self.port,
            "DnsResolution": list(self.dns_resolution.ip_addresses) if self.dns_resolution else None,
            "Ping": self.ping,
            "ScanTypes": [m.name for m in ScanType if m.name and m in self.scan_types
                          and m not in (ScanType.DEFAULT, ScanType.ALL)],
            "Services": [s.service_name for s in self.services],
            "SystemServices": [s.service_name for s in self.system_services],
            "SPNs": list(self.spns),
            "BrowseReply": self.browse_reply.sql_instance if self.browse_reply else None,
            "PortsScanned": {p.port: p.is_open for p in self.ports_scanned},
            "TcpConnected": self.tcp_connected,
            "SqlConnected": self.sql_connected,
            "Confidence": self.confidence.label,
            "Availability": self.availability.value,
            "Timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Credential:
    """User name and password for the directory, remote services or SQL logins."""
    username: str
    password: str = field(default="", repr=False)


@dataclass
class DiscoveryRequest:
    """What to discover, how to probe it and which rows to keep."""
    hosts: List[Any] = field(default_factory=list)
    discovery_types: DiscoveryType = DiscoveryType(0)
    ip_ranges: List[str] = field(default_factory=list)
    scan_types: ScanType = ScanType.DEFAULT
    ports: List[int] = field(default_factory=lambda: [1433])
    credential: Optional[Credential] = None
    sql_credential: Optional[Credential] = None
    domain_controller: Optional[str] = None
    min_confidence: Confidence = Confidence.LOW
    raise_errors: bool = False
