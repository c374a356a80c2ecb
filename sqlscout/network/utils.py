"""
Core network utility functions: IP literal checks, DNS resolution and TCP probes.
"""
import logging
import socket
from functools import lru_cache
from typing import Dict, List, Optional, Tuple, cast

from ..models import DnsResult, PortResult

logger = logging.getLogger("sqlscout.network")


@lru_cache(maxsize=1024)
def _is_ip_literal(host: str) -> Tuple[bool, Optional[int]]:
    """Checks if a string is a valid IP literal."""
    try:
        socket.inet_pton(socket.AF_INET, host)
        return True, socket.AF_INET
    except OSError:
        pass
    try:
        socket.inet_pton(socket.AF_INET6, host.split('%')[0])
        return True, socket.AF_INET6
    except OSError:
        return False, None


def is_ip_literal(host: str) -> bool:
    return _is_ip_literal(host)[0]


def _scope_id(scope: str) -> int:
    if not scope:
        return 0
    try:
        return socket.if_nametoindex(scope)
    except OSError:
        return 0


def _resolve_addresses(host: str) -> List[Tuple[int, str, int, int]]:
    """(family, address, flowinfo, scope id) for every distinct address of `host`."""
    is_ip, family = _is_ip_literal(host)
    if is_ip:
        if family == socket.AF_INET:
            return [(socket.AF_INET, host, 0, 0)]
        ip_only, _, scope = host.partition('%')
        return [(socket.AF_INET6, ip_only, 0, _scope_id(scope))]

    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as e:
        logger.debug(f"Could not resolve {host}: {e}")
        return []

    addresses: Dict[Tuple[int, str, int], Tuple[int, str, int, int]] = {}
    for family, _, _, _, sockaddr in infos:
        if family == socket.AF_INET:
            record = (family, cast(str, sockaddr[0]), 0, 0)
        elif family == socket.AF_INET6 and len(sockaddr) == 4:
            record = (family, cast(str, sockaddr[0]), cast(int, sockaddr[2]), cast(int, sockaddr[3]))
        else:
            continue
        addresses.setdefault((record[0], record[1], record[3]), record)
    return list(addresses.values())


def resolve_dns(host: str) -> Optional[DnsResult]:
    """
    Forward lookup of a host name.

    Literal addresses get a reverse lookup instead so the report can carry a
    computer name. Any failure means "no resolution" and returns None.
    """
    try:
        if is_ip_literal(host):
            host_name, aliases, addresses = socket.gethostbyaddr(host.split('%')[0])
        else:
            host_name, aliases, addresses = socket.gethostbyname_ex(host)
    except (socket.herror, socket.gaierror, socket.timeout, UnicodeError, OSError) as e:
        logger.debug(f"DNS resolution failed for {host}: {e}")
        return None
    return DnsResult(host=host, host_name=host_name, aliases=tuple(aliases), ip_addresses=tuple(addresses))


def check_tcp_port(host: str, port: int, timeout: float) -> PortResult:
    """
    Attempts a TCP connect to (host, port).

    The socket is closed right after the attempt; every error counts as closed.
    """
    for family, ip, flowinfo, scopeid in _resolve_addresses(host):
        try:
            with socket.socket(family, socket.SOCK_STREAM) as sock:
                sock.settimeout(timeout)
                sockaddr = (ip, port) if family == socket.AF_INET else (ip, port, flowinfo, scopeid)
                if sock.connect_ex(sockaddr) == 0:
                    return PortResult(host=host, port=port, is_open=True)
        except (socket.timeout, OSError):
            continue
    return PortResult(host=host, port=port, is_open=False)
