"""
Per-host scan orchestration.

For each target the enabled probes run in a fixed order and their output is
gathered into an InstanceEvidence. Probe failures become "no evidence" and
never stop the scan of a host; a failing host never stops the others.
Hosts may be scanned in parallel; the target stream is consumed lazily.
"""
from __future__ import annotations
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional, Set, TypeVar

from .checkers.directory import DirectoryError, LazyDirectory
from .checkers.services import ServiceQueryError, enumerate_services
from .models import Credential, InstanceEvidence, PortResult, ScanTarget, ScanType
from .network.browser import probe_browser
from .network.ping import ping_host
from .network.utils import check_tcp_port, is_ip_literal, resolve_dns

logger = logging.getLogger("sqlscout.scanner")

T = TypeVar("T")


@dataclass
class ScanOptions:
    """Timeouts and switches shared by every host scan."""
    ports: List[int] = field(default_factory=lambda: [1433])
    port_timeout: float = 1.0
    ping_timeout: float = 1.0
    browser_timeout: float = 2.0
    service_timeout: float = 20.0
    raise_errors: bool = False


@dataclass
class ProbeSet:
    """The probe functions used by the scanner; replaceable in tests."""
    resolve: Callable = resolve_dns
    ping: Callable = ping_host
    tcp: Callable = check_tcp_port
    browser: Callable = probe_browser
    services: Callable = enumerate_services


class HostScanner:
    """Runs the enabled probes against each host exactly once per invocation."""

    def __init__(
        self,
        scan_types: ScanType,
        options: Optional[ScanOptions] = None,
        credential: Optional[Credential] = None,
        directory: Optional[LazyDirectory] = None,
        probes: Optional[ProbeSet] = None,
        max_workers: int = 1,
    ):
        self.scan_types = scan_types
        self.options = options or ScanOptions()
        self.credential = credential
        self.directory = directory
        self.probes = probes or ProbeSet()
        self.max_workers = max(1, max_workers)
        self._scanned: Set[str] = set()
        self._scanned_lock = threading.Lock()

    def _claim(self, host: str) -> bool:
        """Marks a host as scanned; False if it already was."""
        key = host.strip().lower()
        with self._scanned_lock:
            if key in self._scanned:
                return False
            self._scanned.add(key)
            return True

    def _lookup_spns(self, host: str) -> List[str]:
        if self.directory is None:
            return []
        try:
            return self.directory.get().find_spns(host)
        except DirectoryError as e:
            logger.debug(f"SPN lookup for {host} failed: {e}")
            return []

    def _attempt(self, label: str, host: str, probe: Callable[..., T], default: T, *args,
                 strict: bool = False, **kwargs) -> T:
        """Runs one probe; any failure becomes `default` unless `strict`."""
        try:
            return probe(*args, **kwargs)
        except ServiceQueryError as e:
            logger.info(f"No service data for {host}: {e}")
        except Exception as e:  # pylint: disable=broad-except
            if strict:
                raise
            logger.debug(f"{label} of {host} failed: {e!r}")
        return default

    def scan_host(self, target: ScanTarget) -> Optional[InstanceEvidence]:
        """
        Collects evidence for one target; None when the host was already scanned.
        """
        if not self._claim(target.host):
            logger.debug(f"Skipping {target.host}: already scanned")
            return None

        host = target.host
        opts = self.options
        evidence = InstanceEvidence(target=target, scan_types=self.scan_types)
        lookup_name = host

        if ScanType.DNS_RESOLVE in self.scan_types:
            evidence.dns = self._attempt("DNS lookup", host, self.probes.resolve, None, host)
            if evidence.dns is not None and evidence.dns.host_name:
                lookup_name = evidence.dns.host_name

        if ScanType.PING in self.scan_types:
            evidence.ping = self._attempt("Ping", host, self.probes.ping, None, host, opts.ping_timeout)

        if ScanType.SPN in self.scan_types and not is_ip_literal(lookup_name):
            evidence.spns = self._attempt("SPN lookup", lookup_name, self._lookup_spns, [], lookup_name)

        # Ports are always probed; several fusion rules depend on them.
        evidence.ports = [
            self._attempt(f"TCP {port} probe", host, self.probes.tcp, PortResult(host, port, False),
                          host, port, opts.port_timeout)
            for port in opts.ports
        ]

        if ScanType.BROWSER in self.scan_types:
            evidence.browser_replies = self._attempt(
                "SQL Browser probe", host, self.probes.browser, [],
                host, timeout=opts.browser_timeout, raise_errors=opts.raise_errors, strict=opts.raise_errors)

        if ScanType.SQL_SERVICE in self.scan_types:
            evidence.services = self._attempt(
                "Service query", host, self.probes.services, [], host, self.credential, opts.service_timeout)

        logger.debug(f"Scanned {host}: open ports {evidence.open_ports}, "
                     f"{len(evidence.browser_replies)} browser record(s), {len(evidence.services)} service(s)")
        return evidence

    def _scan_safely(self, target: ScanTarget) -> Optional[InstanceEvidence]:
        try:
            return self.scan_host(target)
        except Exception as e:  # pylint: disable=broad-except
            if self.options.raise_errors:
                raise
            logger.warning(f"Scan of {target.host} failed: {e!r}")
            return None

    def scan(self, targets: Iterable[ScanTarget]) -> Iterator[InstanceEvidence]:
        """Scans every target; results come back in completion order."""
        if self.max_workers == 1:
            for target in targets:
                evidence = self._scan_safely(target)
                if evidence is not None:
                    yield evidence
            return

        window = self.max_workers * 2
        pending: Set[Future] = set()
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for target in targets:
                pending.add(executor.submit(self._scan_safely, target))
                if len(pending) >= window:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    yield from self._collect(done)
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                yield from self._collect(done)

    @staticmethod
    def _collect(done: Iterable[Future]) -> Iterator[InstanceEvidence]:
        for future in done:
            evidence = future.result()
            if evidence is not None:
                yield evidence
