"""
SQL Server Browser (SSRP) probes on UDP/1434.

The unicast probe sends CLNT_UCAST_EX (0x03) to one host and reads a single
reply. The broadcast variant sends CLNT_BCAST_EX (0x02) and collects every
reply that arrives before the timeout. Replies are SVR_RESP datagrams: one
0x05 byte, a little-endian length, then ASCII records such as

    ServerName;HOST1;InstanceName;SQL2019;IsClustered;No;Version;15.0.2000.5;tcp;1433;;
"""
import logging
import re
import socket
import time
from typing import Iterable, List, Optional

from ..models import BrowserReply

logger = logging.getLogger("sqlscout.browser")

SSRP_PORT = 1434
CLNT_BCAST_EX = b"\x02"
CLNT_UCAST_EX = b"\x03"
SVR_RESP = 0x05

_RECORD_RE = re.compile(
    r"ServerName;(?P<server>[^;]*);"
    r"InstanceName;(?P<instance>[^;]*);"
    r"IsClustered;(?P<clustered>[^;]*);"
    r"Version;(?P<version>[^;]*);"
    r"(?P<protocols>.*?)(?=;;|ServerName;|$)",
    re.DOTALL,
)
_TCP_RE = re.compile(r"(?:^|;)tcp;(\d+)")


def parse_browser_response(data: bytes, machine_name: str = "") -> List[BrowserReply]:
    """Parses every instance record in an SSRP response datagram."""
    if data[:1] == bytes([SVR_RESP]) and len(data) >= 3:
        data = data[3:]
    text = data.decode("ascii", errors="ignore")
    replies = []
    for match in _RECORD_RE.finditer(text):
        tcp = _TCP_RE.search(match.group("protocols"))
        replies.append(BrowserReply(
            machine_name=machine_name or match.group("server"),
            computer_name=match.group("server"),
            instance_name=match.group("instance"),
            tcp_port=int(tcp.group(1)) if tcp else None,
            version=match.group("version"),
            is_clustered=match.group("clustered").strip().lower() == "yes",
        ))
    return replies


def probe_browser(host: str, timeout: float = 2.0, raise_errors: bool = False) -> List[BrowserReply]:
    """
    Asks the Browser service on `host` for all of its instances.

    Socket and timeout errors are swallowed (empty list) unless `raise_errors`.
    """
    try:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            sock.settimeout(timeout)
            sock.sendto(CLNT_UCAST_EX, (host.split('%')[0], SSRP_PORT))
            data, _ = sock.recvfrom(65535)
    except (socket.timeout, OSError) as e:
        if raise_errors:
            raise
        logger.debug(f"No SQL Browser reply from {host}: {e}")
        return []
    replies = parse_browser_response(data, machine_name=host)
    logger.debug(f"SQL Browser on {host} reported {len(replies)} instance(s)")
    return replies


def broadcast_browser(
    broadcast_addresses: Iterable[str] = ("255.255.255.255",),
    timeout: float = 2.0,
) -> List[BrowserReply]:
    """Broadcasts CLNT_BCAST_EX and gathers replies until `timeout` elapses."""
    replies: List[BrowserReply] = []
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        for address in broadcast_addresses:
            try:
                sock.sendto(CLNT_BCAST_EX, (address, SSRP_PORT))
            except OSError as e:
                logger.warning(f"Could not broadcast SSRP request to {address}: {e}")
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                data, addr = sock.recvfrom(65535)
            except socket.timeout:
                break
            except OSError as e:
                # Windows reports ICMP port-unreachable from one host as a reset on the next receive.
                logger.debug(f"Ignoring SSRP receive error: {e}")
                continue
            replies.extend(parse_browser_response(data, machine_name=addr[0]))
    return replies


def find_server_names(replies: Iterable[BrowserReply]) -> List[str]:
    """Distinct server names in first-seen order; instance names are dropped."""
    seen = {}
    for reply in replies:
        key = reply.computer_name.upper()
        if reply.computer_name and key not in seen:
            seen[key] = reply.computer_name
    return list(seen.values())


def first_reply_for(replies: Iterable[BrowserReply], instance_name: str) -> Optional[BrowserReply]:
    for reply in replies:
        if reply.instance_name.upper() == instance_name.upper():
            return reply
    return None
