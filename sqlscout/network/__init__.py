"""
Network-level probes for sqlscout.
"""

from .browser import probe_browser, broadcast_browser, parse_browser_response, find_server_names
from .discovery import get_local_subnets, get_broadcast_addresses
from .ping import ping_host
from .utils import check_tcp_port, resolve_dns, is_ip_literal

__all__ = [
    "probe_browser",
    "broadcast_browser",
    "parse_browser_response",
    "find_server_names",
    "get_local_subnets",
    "get_broadcast_addresses",
    "ping_host",
    "check_tcp_port",
    "resolve_dns",
    "is_ip_literal",
]
