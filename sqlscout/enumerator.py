"""
Expands a discovery request into a lazy stream of scan targets.

Sources: explicit hosts, IP ranges (defaulting to the local subnets),
directory SPN and server sweeps, and the SQL Browser broadcast. A source
that fails logs a warning and contributes nothing; the others carry on.
Duplicates across sources are left for the scanner to drop.
"""
from __future__ import annotations
import logging
from typing import Callable, Iterable, Iterator, List, Optional

from .checkers.directory import DirectoryError, LazyDirectory
from .models import DiscoveryRequest, DiscoveryType, ScanTarget
from .network.browser import broadcast_browser, find_server_names
from .network.discovery import get_broadcast_addresses, get_local_subnets
from .parsing import IPv4Range, extract_host, parse_ip_range

logger = logging.getLogger("sqlscout.enumerator")


def validate_request(request: DiscoveryRequest) -> List[IPv4Range]:
    """
    Checks a request before any scanning starts and returns its parsed IP ranges.

    Raises ValueError for malformed ranges, bad hosts or an empty request.
    """
    if not request.hosts and not request.discovery_types and not request.ip_ranges:
        raise ValueError("Nothing to scan: give at least one host, IP range or discovery type.")
    for host in request.hosts:
        extract_host(host)
    return [parse_ip_range(value) for value in request.ip_ranges]


class TargetEnumerator:
    """Produces ScanTargets for one discovery request."""

    def __init__(
        self,
        request: DiscoveryRequest,
        directory: Optional[LazyDirectory] = None,
        browser_timeout: float = 2.0,
        subnets_provider: Callable = get_local_subnets,
        broadcaster: Callable = broadcast_browser,
    ):
        self.request = request
        self.ranges = validate_request(request)
        self.directory = directory or LazyDirectory(request.domain_controller, request.credential)
        self.browser_timeout = browser_timeout
        self._subnets_provider = subnets_provider
        self._broadcaster = broadcaster

    def __iter__(self) -> Iterator[ScanTarget]:
        return self.targets()

    def targets(self) -> Iterator[ScanTarget]:
        for host in self.request.hosts:
            yield ScanTarget(extract_host(host))

        kinds = self.request.discovery_types
        if self.ranges:
            kinds |= DiscoveryType.IP_RANGE
        sources = [
            (DiscoveryType.DOMAIN_SPN, "directory SPN sweep", self._spn_hosts),
            (DiscoveryType.DOMAIN_SERVER, "directory server sweep", self._domain_servers),
            (DiscoveryType.DATA_SOURCE_ENUMERATION, "SQL Browser broadcast", self._broadcast_hosts),
            (DiscoveryType.IP_RANGE, "IP range", self._ip_range_hosts),
        ]
        for kind, label, source in sources:
            if kind in kinds:
                yield from self._guarded(label, source)

    def _guarded(self, label: str, source: Callable[[], Iterable[ScanTarget]]) -> Iterator[ScanTarget]:
        count = 0
        try:
            for target in source():
                count += 1
                yield target
        except (DirectoryError, OSError, ValueError) as e:
            logger.warning(f"Discovery source '{label}' failed after {count} target(s): {e}")
            return
        logger.info(f"Discovery source '{label}' produced {count} target(s)")

    def _spn_hosts(self) -> Iterator[ScanTarget]:
        for host in self.directory.get().find_spn_hosts():
            yield ScanTarget(host, resolved=True)

    def _domain_servers(self) -> Iterator[ScanTarget]:
        for host in self.directory.get().find_servers():
            yield ScanTarget(host, resolved=True)

    def _broadcast_hosts(self) -> Iterator[ScanTarget]:
        replies = self._broadcaster(get_broadcast_addresses(), timeout=self.browser_timeout)
        for name in find_server_names(replies):
            yield ScanTarget(name)

    def _ip_range_hosts(self) -> Iterator[ScanTarget]:
        ranges = self.ranges
        if not ranges:
            subnets = self._subnets_provider()
            ranges = [IPv4Range(s.network.network_address, s.network.broadcast_address) for s in subnets]
            if not ranges:
                raise ValueError("no IP range given and no local adapter subnet found")
            logger.info(f"Scanning local subnets: {', '.join(str(r) for r in ranges)}")
        for ip_range in ranges:
            for address in ip_range:
                yield ScanTarget(address, resolved=True)
