import ipaddress
from itertools import islice
from unittest.mock import MagicMock, patch

import pytest

from sqlscout.checkers.directory import DirectoryError
from sqlscout.enumerator import TargetEnumerator, validate_request
from sqlscout.models import BrowserReply, DiscoveryRequest, DiscoveryType
from sqlscout.network.discovery import LocalSubnet


def hosts_of(enumerator):
    return [t.host for t in enumerator.targets()]


class TestValidation:
    def test_empty_request_is_rejected(self):
        with pytest.raises(ValueError):
            validate_request(DiscoveryRequest())

    @pytest.mark.parametrize("value", ["10.0.0.0/7", "10.0.0.0/32", "10.0.0.x", "10.0.0.9-10.0.0.1"])
    def test_bad_range_fails_before_scanning(self, value):
        with pytest.raises(ValueError):
            TargetEnumerator(DiscoveryRequest(ip_ranges=[value]), directory=MagicMock())

    def test_bad_host_fails_before_scanning(self):
        with pytest.raises(ValueError):
            validate_request(DiscoveryRequest(hosts=["   "]))

    def test_range_alone_is_enough(self):
        ranges = validate_request(DiscoveryRequest(ip_ranges=["10.0.0.0/30"]))
        assert len(ranges[0]) == 4


def test_explicit_hosts_are_normalised():
    enumerator = TargetEnumerator(DiscoveryRequest(hosts=["SQL01\\PROD", "tcp:SQL02,1500"]), directory=MagicMock())
    assert hosts_of(enumerator) == ["SQL01", "SQL02"]


def test_sources_run_in_order_after_explicit_hosts():
    directory = MagicMock()
    directory.get.return_value.find_spn_hosts.return_value = iter(["sql01.contoso.com"])
    directory.get.return_value.find_servers.return_value = iter(["app01.contoso.com"])
    request = DiscoveryRequest(hosts=["WEB01"], ip_ranges=["10.0.0.1-10.0.0.2"],
                               discovery_types=DiscoveryType.DOMAIN_SPN | DiscoveryType.DOMAIN_SERVER)
    assert hosts_of(TargetEnumerator(request, directory=directory)) == [
        "WEB01", "sql01.contoso.com", "app01.contoso.com", "10.0.0.1", "10.0.0.2"]


def test_failing_source_contributes_nothing_and_others_continue():
    directory = MagicMock()
    directory.get.side_effect = DirectoryError("no domain controller")
    request = DiscoveryRequest(ip_ranges=["10.0.0.1"], discovery_types=DiscoveryType.DOMAIN_SPN)
    assert hosts_of(TargetEnumerator(request, directory=directory)) == ["10.0.0.1"]


def test_broadcast_yields_distinct_server_names():
    replies = [
        BrowserReply("10.0.0.5", "SQL01", "MSSQLSERVER", 1433, "16.0.1000.6", False),
        BrowserReply("10.0.0.5", "SQL01", "REPORTS", None, "16.0.1000.6", False),
        BrowserReply("10.0.0.6", "SQL02", "PROD", 1500, "15.0.2000.5", False),
    ]
    broadcaster = MagicMock(return_value=replies)
    request = DiscoveryRequest(discovery_types=DiscoveryType.DATA_SOURCE_ENUMERATION)
    with patch("sqlscout.enumerator.get_broadcast_addresses", return_value=["255.255.255.255"]):
        enumerator = TargetEnumerator(request, directory=MagicMock(), broadcaster=broadcaster, browser_timeout=0.5)
        assert hosts_of(enumerator) == ["SQL01", "SQL02"]
    broadcaster.assert_called_once_with(["255.255.255.255"], timeout=0.5)


def test_ip_range_defaults_to_local_subnets():
    network = ipaddress.IPv4Network("192.168.10.0/30")
    subnets = [LocalSubnet("eth0", "192.168.10.1", network, "192.168.10.3")]
    request = DiscoveryRequest(discovery_types=DiscoveryType.IP_RANGE)
    enumerator = TargetEnumerator(request, directory=MagicMock(), subnets_provider=lambda: subnets)
    assert hosts_of(enumerator) == ["192.168.10.0", "192.168.10.1", "192.168.10.2", "192.168.10.3"]


def test_no_local_subnet_is_a_source_failure():
    request = DiscoveryRequest(hosts=["WEB01"], discovery_types=DiscoveryType.IP_RANGE)
    enumerator = TargetEnumerator(request, directory=MagicMock(), subnets_provider=lambda: [])
    assert hosts_of(enumerator) == ["WEB01"]


def test_targets_are_produced_lazily():
    enumerator = TargetEnumerator(DiscoveryRequest(ip_ranges=["10.0.0.0/8"]), directory=MagicMock())
    first = list(islice(enumerator.targets(), 3))
    assert [t.host for t in first] == ["10.0.0.0", "10.0.0.1", "10.0.0.2"]
    assert all(t.resolved for t in first)
