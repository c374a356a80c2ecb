"""
Evidence fusion and confidence classification.

Turns one host's InstanceEvidence into report rows: one per instance name
seen in services, browser replies or SPNs, then one per remaining port seen
open or named in an SPN. Confidence only ever goes up within a pass:

    browser reply for the instance        -> Medium
    service for the instance              -> High
    bare port                             -> Low
    bare port, 1433 open or SPN-confirmed -> Medium
    authenticated connection reached      -> High
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .checkers.directory import parse_spn
from .checkers.sqlconnect import ConnectionOutcome, SqlConnector
from .models import (
    Availability,
    Confidence,
    InstanceEvidence,
    PortResult,
    ScanReport,
    ServiceInfo,
    ServiceType,
)
from .network.browser import first_reply_for

logger = logging.getLogger("sqlscout.fusion")

DEFAULT_SQL_PORT = 1433

_STATE_TO_AVAILABILITY = {
    "running": Availability.AVAILABLE,
    "stopped": Availability.UNAVAILABLE,
}


class OrderedSet:
    """Insertion-ordered, case-insensitive set of names."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def add(self, value: str) -> None:
        key = value.upper()
        if value and key not in self._items:
            self._items[key] = value

    def __contains__(self, value: object) -> bool:
        return isinstance(value, str) and value.upper() in self._items

    def __iter__(self):
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)


def _spn_suffixes(spns: Iterable[str]) -> List[str]:
    suffixes = []
    for spn in spns:
        _, suffix = parse_spn(spn)
        if suffix:
            suffixes.append(suffix)
    return suffixes


def _spn_ports(spns: Iterable[str]) -> List[int]:
    return [int(s) for s in _spn_suffixes(spns) if s.isdigit()]


def collect_instance_names(evidence: InstanceEvidence) -> OrderedSet:
    """Instance names from services, then browser replies, then non-numeric SPN suffixes."""
    names = OrderedSet()
    for service in evidence.services:
        if service.instance_name:
            names.add(service.instance_name)
    for reply in evidence.browser_replies:
        if reply.instance_name:
            names.add(reply.instance_name)
    for suffix in _spn_suffixes(evidence.spns):
        if not suffix.isdigit():
            names.add(suffix)
    return names


def collect_port_candidates(evidence: InstanceEvidence) -> List[int]:
    """Open probed ports, then numeric SPN suffixes that were not already open."""
    ports = list(dict.fromkeys(evidence.open_ports))
    for port in _spn_ports(evidence.spns):
        if port not in ports:
            ports.append(port)
    return ports


def derive_availability(services: Iterable[ServiceInfo]) -> Availability:
    for service in services:
        if service.service_type is ServiceType.ENGINE:
            return _STATE_TO_AVAILABILITY.get(service.state.strip().lower(), Availability.UNKNOWN)
    return Availability.UNKNOWN


def _port_state(ports: Iterable[PortResult], port: Optional[int]) -> bool:
    if port is None:
        return False
    return any(p.port == port and p.is_open for p in ports)


def _base_report(evidence: InstanceEvidence, timestamp: datetime, system_services: List[ServiceInfo]) -> ScanReport:
    return ScanReport(
        machine_name=evidence.target.host,
        computer_name=evidence.computer_name,
        scan_types=evidence.scan_types,
        timestamp=timestamp,
        dns_resolution=evidence.dns,
        ping=bool(evidence.ping and evidence.ping.success),
        system_services=list(system_services),
        spns=list(evidence.spns),
        ports_scanned=list(evidence.ports),
    )


def build_reports(
    evidence: InstanceEvidence,
    min_confidence: Confidence = Confidence.LOW,
    timestamp: Optional[datetime] = None,
) -> List[ScanReport]:
    """Fuses one host's evidence into instance rows followed by bare-port rows."""
    timestamp = timestamp or datetime.now()
    instance_names = collect_instance_names(evidence)
    port_candidates = collect_port_candidates(evidence)

    if not instance_names and not port_candidates:
        if evidence.reachable and min_confidence == Confidence.NONE:
            return [_base_report(evidence, timestamp, [s for s in evidence.services if not s.instance_name])]
        return []

    system_services = [s for s in evidence.services if not s.instance_name]
    reports: List[ScanReport] = []
    claimed_ports = set()

    for name in instance_names:
        report = _base_report(evidence, timestamp, system_services)
        report.instance_name = name
        report.confidence = Confidence.LOW

        reply = first_reply_for(evidence.browser_replies, name)
        if reply is not None:
            report.browse_reply = reply
            report.raise_confidence(Confidence.MEDIUM)
            if reply.tcp_port is not None and reply.tcp_port not in claimed_ports:
                claimed_ports.add(reply.tcp_port)
                report.port = reply.tcp_port
                report.tcp_connected = _port_state(evidence.ports, reply.tcp_port)

        matching = [s for s in evidence.services if s.instance_name.upper() == name.upper()]
        if matching:
            report.services = matching
            report.raise_confidence(Confidence.HIGH)
            report.availability = derive_availability(matching)
        reports.append(report)

    open_ports = set(evidence.open_ports)
    spn_ports = set(_spn_ports(evidence.spns))

    for port in port_candidates:
        if port in claimed_ports:
            continue
        claimed_ports.add(port)
        report = _base_report(evidence, timestamp, system_services)
        report.port = port
        report.confidence = Confidence.LOW
        if DEFAULT_SQL_PORT in open_ports:
            report.raise_confidence(Confidence.MEDIUM)
        if port in open_ports and port in spn_ports:
            report.raise_confidence(Confidence.MEDIUM)
        report.tcp_connected = _port_state(evidence.ports, port)
        reports.append(report)

    return reports


def apply_sql_connection(reports: List[ScanReport], connector: SqlConnector) -> List[ScanReport]:
    """
    Tries an authenticated connection for every row and upgrades the rows a
    server answered for. Rows that connect to an already-seen server are
    dropped, keyed by the name the server reports for itself.
    """
    seen_identities = set()
    kept: List[ScanReport] = []
    for report in reports:
        result = connector.probe(report.full_name)
        if result.outcome is ConnectionOutcome.CONNECTED:
            identity = result.server_identity or report.full_name.upper()
            if identity in seen_identities:
                logger.debug(f"Dropping {report.full_name}: same server as an earlier row ({identity})")
                continue
            seen_identities.add(identity)
            report.sql_connected = True
            report.confidence = Confidence.HIGH
        elif result.outcome is ConnectionOutcome.REJECTED:
            report.sql_connected = True
            report.confidence = Confidence.HIGH
        else:
            report.sql_connected = False
        kept.append(report)
    return kept


def filter_reports(reports: Iterable[ScanReport], min_confidence: Confidence) -> List[ScanReport]:
    """Drops every row below `min_confidence`."""
    return [r for r in reports if r.confidence >= min_confidence]
