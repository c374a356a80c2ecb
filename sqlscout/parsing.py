"""
Parsing and validation of discovery input: host identifiers, port lists
and IPv4 ranges.
"""
from __future__ import annotations
import ipaddress
import re
from dataclasses import dataclass
from typing import Any, Iterator, List

MIN_PREFIX = 8
MAX_PREFIX = 31

_CONNECTION_STRING_KEYS = ("server", "data source", "address", "addr", "network address")
_HOST_ATTRIBUTES = ("computer_name", "machine_name", "host", "name")


@dataclass(frozen=True)
class IPv4Range:
    """An inclusive range of IPv4 addresses, expanded lazily."""
    first: ipaddress.IPv4Address
    last: ipaddress.IPv4Address

    def __len__(self) -> int:
        return int(self.last) - int(self.first) + 1

    def __iter__(self) -> Iterator[str]:
        for value in range(int(self.first), int(self.last) + 1):
            yield str(ipaddress.IPv4Address(value))

    def __str__(self) -> str:
        return f"{self.first}-{self.last}"


def _parse_address(value: str, original: str) -> ipaddress.IPv4Address:
    try:
        return ipaddress.IPv4Address(value.strip())
    except ValueError:
        raise ValueError(f"'{value.strip()}' in IP range '{original}' is not a valid IPv4 address.")


def parse_ip_range(value: str) -> IPv4Range:
    """
    Parses a single address, a dash range (a.b.c.d-a.b.c.e), CIDR notation
    (a.b.c.d/8 .. /31) or a dotted mask (a.b.c.d/255.255.255.0).

    CIDR and mask forms cover the whole network, from network address to
    broadcast address.
    """
    s = value.strip()
    if not s:
        raise ValueError("IP range is empty.")

    if '-' in s:
        start_str, _, end_str = s.partition('-')
        first, last = _parse_address(start_str, s), _parse_address(end_str, s)
        if first > last:
            raise ValueError(f"IP range '{s}' starts after it ends.")
        return IPv4Range(first, last)

    if '/' in s:
        address_str, _, mask_str = s.partition('/')
        address = _parse_address(address_str, s)
        mask_str = mask_str.strip()
        if mask_str.isdigit():
            prefix = int(mask_str)
        else:
            try:
                prefix = ipaddress.IPv4Network(f"0.0.0.0/{mask_str}").prefixlen
            except ValueError:
                raise ValueError(f"'{mask_str}' in IP range '{s}' is not a valid subnet mask.")
        if not MIN_PREFIX <= prefix <= MAX_PREFIX:
            raise ValueError(f"CIDR prefix /{prefix} in '{s}' is outside the supported range /{MIN_PREFIX}-/{MAX_PREFIX}.")
        network = ipaddress.IPv4Network(f"{address}/{prefix}", strict=False)
        return IPv4Range(network.network_address, network.broadcast_address)

    address = _parse_address(s, s)
    return IPv4Range(address, address)


def parse_ports(value: Any) -> List[int]:
    """Parses a comma-separated string (or list) of ports into unique integers."""
    if isinstance(value, (int, str)):
        items = [p for p in str(value).split(',') if p.strip()]
    else:
        items = list(value or [])
    try:
        ports = [int(str(p).strip()) for p in items]
    except (ValueError, TypeError):
        raise ValueError(f"Invalid port list '{value}'. Use comma-separated numbers (1-65535).")
    if not ports or not all(0 < port < 65536 for port in ports):
        raise ValueError(f"Invalid port list '{value}'. Use comma-separated numbers (1-65535).")
    return list(dict.fromkeys(ports))


def _host_from_connection_string(value: str) -> str:
    for part in value.split(';'):
        key, sep, val = part.partition('=')
        if sep and key.strip().lower() in _CONNECTION_STRING_KEYS:
            return val.strip()
    return ""


def extract_host(value: Any) -> str:
    """
    Reduces a host identifier to a bare host name or IP address.

    Instance names, ports, protocol prefixes and connection string noise are
    discarded: 'tcp:SQL01\\PROD,1433' -> 'SQL01'. Objects are accepted when
    they carry a host name attribute.
    """
    if not isinstance(value, str):
        for attr in _HOST_ATTRIBUTES:
            candidate = getattr(value, attr, None)
            if isinstance(candidate, str) and candidate.strip():
                return extract_host(candidate)
        raise ValueError(f"Cannot extract a host name from {value!r}.")

    s = value.strip()
    if '=' in s:
        s = _host_from_connection_string(s) or s

    # Protocol prefixes such as tcp:, np:, lpc:, admin:
    s = re.sub(r'^(tcp|np|lpc|admin):', '', s, flags=re.IGNORECASE).strip()
    if s.startswith('\\\\'):
        s = s[2:].split('\\', 1)[0]

    if s.startswith('['):
        end = s.find(']')
        if end != -1:
            return s[1:end]
    try:
        ipaddress.ip_address(s)
        return s
    except ValueError:
        pass

    s = s.split('\\', 1)[0].split(',', 1)[0]
    if s.count(':') == 1:
        s = s.split(':', 1)[0]
    s = s.strip()
    if s in ('.', '(local)', '(localdb)', 'localhost'):
        return 'localhost'
    if not s:
        raise ValueError(f"Cannot extract a host name from '{value}'.")
    return s
