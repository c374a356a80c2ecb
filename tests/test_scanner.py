import threading
from unittest.mock import MagicMock

import pytest

from sqlscout.checkers.directory import DirectoryError
from sqlscout.checkers.services import ServiceQueryError
from sqlscout.models import DnsResult, PingResult, PortResult, ScanTarget, ScanType
from sqlscout.scanner import HostScanner, ProbeSet, ScanOptions


class RecordingProbes:
    """Probe doubles that record every call made by the scanner."""

    def __init__(self, dns=None, open_ports=()):
        self.calls = []
        self.dns = dns
        self.open_ports = set(open_ports)
        self.lock = threading.Lock()

    def _record(self, name, *args):
        with self.lock:
            self.calls.append((name,) + args)

    def resolve(self, host):
        self._record("dns", host)
        return self.dns

    def ping(self, host, timeout):
        self._record("ping", host)
        return PingResult(host, True, 1.0)

    def tcp(self, host, port, timeout):
        self._record("tcp", host, port)
        return PortResult(host, port, port in self.open_ports)

    def browser(self, host, timeout, raise_errors):
        self._record("browser", host)
        return []

    def services(self, host, credential, timeout):
        self._record("services", host)
        return []

    def probe_set(self):
        return ProbeSet(resolve=self.resolve, ping=self.ping, tcp=self.tcp,
                        browser=self.browser, services=self.services)

    def names(self):
        return [c[0] for c in self.calls]


def test_same_host_from_two_sources_is_scanned_once():
    probes = RecordingProbes()
    scanner = HostScanner(ScanType.TCP_PORT, probes=probes.probe_set())
    results = list(scanner.scan([ScanTarget("X"), ScanTarget("x"), ScanTarget("X ")]))
    assert len(results) == 1
    assert probes.names() == ["tcp"]


def test_port_probe_runs_even_when_not_selected():
    probes = RecordingProbes(open_ports=[2433])
    scanner = HostScanner(ScanType.PING, ScanOptions(ports=[1433, 2433]), probes=probes.probe_set())
    evidence = scanner.scan_host(ScanTarget("H"))
    assert probes.names() == ["ping", "tcp", "tcp"]
    assert evidence.open_ports == [2433]


def test_probe_order_with_default_scan_types():
    directory = MagicMock()
    directory.get.return_value.find_spns.return_value = ["MSSQLsvc/sql01.contoso.com:1433"]
    probes = RecordingProbes(dns=DnsResult("SQL01", "sql01.contoso.com", (), ("10.0.0.1",)))
    scanner = HostScanner(ScanType.DEFAULT, directory=directory, probes=probes.probe_set())
    evidence = scanner.scan_host(ScanTarget("SQL01"))
    assert probes.names() == ["dns", "ping", "tcp", "browser", "services"]
    directory.get.return_value.find_spns.assert_called_once_with("sql01.contoso.com")
    assert evidence.spns == ["MSSQLsvc/sql01.contoso.com:1433"]


def test_spn_lookup_is_skipped_for_ip_literals():
    directory = MagicMock()
    probes = RecordingProbes()
    scanner = HostScanner(ScanType.SPN, directory=directory, probes=probes.probe_set())
    scanner.scan_host(ScanTarget("10.0.0.5"))
    directory.get.assert_not_called()


def test_probe_failures_become_empty_evidence():
    directory = MagicMock()
    directory.get.side_effect = DirectoryError("no domain")
    probes = RecordingProbes()
    probe_set = probes.probe_set()
    probe_set.ping = MagicMock(side_effect=OSError("no route"))
    probe_set.services = MagicMock(side_effect=ServiceQueryError("access denied"))
    scanner = HostScanner(ScanType.DEFAULT, directory=directory, probes=probe_set)

    evidence = scanner.scan_host(ScanTarget("H"))
    assert evidence.ping is None
    assert evidence.spns == []
    assert evidence.services == []
    assert [p.port for p in evidence.ports] == [1433]


def test_failing_port_probe_counts_as_closed():
    probes = RecordingProbes()
    probe_set = probes.probe_set()

    def tcp(host, port, timeout):
        if host == "BAD":
            raise OSError("unreachable")
        return PortResult(host, port, True)

    probe_set.tcp = tcp
    scanner = HostScanner(ScanType.TCP_PORT, probes=probe_set)
    results = {e.target.host: e for e in scanner.scan([ScanTarget("A"), ScanTarget("BAD"), ScanTarget("B")])}
    assert sorted(results) == ["A", "B", "BAD"]
    assert results["BAD"].ports == [PortResult("BAD", 1433, False)]
    assert results["A"].open_ports == [1433]


@pytest.mark.parametrize("probe_name", ["resolve", "ping", "tcp", "browser", "services"])
def test_any_probe_error_leaves_the_other_hosts_alone(probe_name):
    probes = RecordingProbes()
    probe_set = probes.probe_set()
    original = getattr(probe_set, probe_name)

    def failing(host, *args, **kwargs):
        if host == "A":
            raise UnicodeDecodeError("cp1252", b"\x81", 0, 1, "character maps to <undefined>")
        return original(host, *args, **kwargs)

    setattr(probe_set, probe_name, failing)
    scanner = HostScanner(ScanType.DEFAULT, probes=probe_set)
    results = {e.target.host: e for e in scanner.scan([ScanTarget("A"), ScanTarget("B")])}
    assert sorted(results) == ["A", "B"]
    assert [p.port for p in results["A"].ports] == [1433]
    assert results["B"].ping.success is True


def test_browser_error_raises_in_strict_mode():
    probe_set = RecordingProbes().probe_set()
    probe_set.browser = MagicMock(side_effect=OSError("connection reset"))
    scanner = HostScanner(ScanType.BROWSER, ScanOptions(raise_errors=True), probes=probe_set)
    with pytest.raises(OSError):
        list(scanner.scan([ScanTarget("BAD")]))


def test_service_errors_never_raise_even_in_strict_mode():
    probe_set = RecordingProbes().probe_set()
    probe_set.services = MagicMock(side_effect=ServiceQueryError("access denied"))
    scanner = HostScanner(ScanType.SQL_SERVICE, ScanOptions(raise_errors=True), probes=probe_set)
    assert [e.services for e in scanner.scan([ScanTarget("H")])] == [[]]


def test_parallel_scan_covers_every_host_once():
    probes = RecordingProbes()
    scanner = HostScanner(ScanType.TCP_PORT, probes=probes.probe_set(), max_workers=4)
    targets = [ScanTarget(f"10.0.0.{i}") for i in range(1, 21)] + [ScanTarget("10.0.0.1")]
    hosts = sorted(e.target.host for e in scanner.scan(iter(targets)))
    assert hosts == sorted(f"10.0.0.{i}" for i in range(1, 21))
    assert len(probes.calls) == 20
