"""
Top-level discovery controller.

Wires configuration, target enumeration, host scanning, evidence fusion,
the optional connection upgrade and the confidence filter together.
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from . import configuration
from .checkers.directory import LazyDirectory
from .checkers.sqlconnect import SqlConnector
from .enumerator import TargetEnumerator
from .fusion import apply_sql_connection, build_reports, filter_reports
from .models import DiscoveryRequest, ScanReport, ScanType
from .scanner import HostScanner, ProbeSet, ScanOptions

logger = logging.getLogger("sqlscout.finder")


class InstanceFinder:
    """Finds SQL Server instances for a DiscoveryRequest."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        probes: Optional[ProbeSet] = None,
        directory: Optional[LazyDirectory] = None,
        connector: Optional[SqlConnector] = None,
    ):
        self.config = dict(configuration.DEFAULT_CONFIG)
        if config:
            self.config.update(config)
        self.probes = probes
        self.directory = directory
        self.connector = connector

    def _options(self, request: DiscoveryRequest) -> ScanOptions:
        return ScanOptions(
            ports=list(request.ports),
            port_timeout=float(self.config['port_check_timeout_seconds']),
            ping_timeout=float(self.config['ping_timeout_seconds']),
            browser_timeout=float(self.config['browser_timeout_seconds']),
            service_timeout=float(self.config['service_query_timeout_seconds']),
            raise_errors=request.raise_errors,
        )

    def _connector(self, request: DiscoveryRequest) -> SqlConnector:
        if self.connector is not None:
            return self.connector
        return SqlConnector(
            driver=self.config['odbc_driver'],
            credential=request.sql_credential,
            timeout=int(self.config['sql_connect_timeout_seconds']),
        )

    def find(self, request: DiscoveryRequest) -> Iterator[ScanReport]:
        """
        Validates the request, then lazily yields report rows host by host.

        Raises ValueError before any scanning when the request is invalid.
        """
        directory = self.directory or LazyDirectory(request.domain_controller, request.credential)
        enumerator = TargetEnumerator(
            request,
            directory=directory,
            browser_timeout=float(self.config['browser_timeout_seconds']),
        )
        scanner = HostScanner(
            request.scan_types,
            options=self._options(request),
            credential=request.credential,
            directory=directory,
            probes=self.probes,
            max_workers=configuration.get_max_workers(self.config),
        )
        connector = self._connector(request) if ScanType.SQL_CONNECT in request.scan_types else None
        return self._run(request, enumerator, scanner, connector, directory)

    def _run(self, request, enumerator, scanner, connector, directory) -> Iterator[ScanReport]:
        started = datetime.now()
        hosts = rows = 0
        logger.info(f"Discovery started (scan types: {request.scan_types}, ports: {request.ports})")
        try:
            for evidence in scanner.scan(enumerator):
                hosts += 1
                reports = build_reports(evidence, request.min_confidence, timestamp=started)
                if connector is not None and reports:
                    reports = apply_sql_connection(reports, connector)
                for report in filter_reports(reports, request.min_confidence):
                    rows += 1
                    yield report
        finally:
            directory.close()
            logger.info(f"Discovery finished: {hosts} host(s) scanned, {rows} row(s) reported")
