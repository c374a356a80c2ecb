"""
Discovery of the local network: which subnets the machine's physical
adapters sit on, and where to send broadcasts.
"""
import ipaddress
import logging
import socket
from collections import namedtuple
from typing import List, Optional

import psutil

logger = logging.getLogger("sqlscout.discovery")

LocalSubnet = namedtuple("LocalSubnet", ["interface", "address", "network", "broadcast"])

_VIRTUAL_KEYWORDS = ['virtual', 'vmware', 'vbox', 'tailscale', 'vpn', 'loopback', 'teredo',
                     'docker', 'veth', 'vethernet', 'br-', 'virbr', 'hyper-v', 'isatap', 'tun', 'tap', 'wsl']
_PHYSICAL_KEYWORDS = ['ethernet', 'wi-fi', 'wlan', 'eth', 'en0', 'eno', 'ens', 'enp', 'wlp']


def _score_interface(iface_name: str, stats: Optional[dict] = None) -> int:
    """Scores an interface based on its likelihood of being the 'real' physical one."""
    name = iface_name.lower()
    score = 100
    for keyword in _VIRTUAL_KEYWORDS:
        if keyword in name:
            score -= 50
    for keyword in _PHYSICAL_KEYWORDS:
        if keyword in name:
            score += 20
    if stats is None:
        stats = psutil.net_if_stats()
    iface_stats = stats.get(iface_name)
    if iface_stats is not None and iface_stats.isup:
        score += 10
    else:
        score -= 100  # An interface that is down is useless
    return score


def is_ethernet_like(iface_name: str, stats: Optional[dict] = None) -> bool:
    """True for adapters that are up and not obviously virtual or loopback."""
    name = iface_name.lower()
    if name.startswith('lo') or any(keyword in name for keyword in _VIRTUAL_KEYWORDS):
        return False
    if stats is None:
        stats = psutil.net_if_stats()
    iface_stats = stats.get(iface_name)
    return iface_stats is not None and iface_stats.isup


def get_local_subnets() -> List[LocalSubnet]:
    """
    Returns the IPv4 subnet of every Ethernet-like adapter, using the
    adapter's own prefix length.
    """
    subnets: List[LocalSubnet] = []
    try:
        addrs = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except (OSError, RuntimeError) as e:
        logger.error(f"Could not enumerate local network adapters: {e}")
        return subnets

    for iface, iface_addrs in addrs.items():
        if not is_ethernet_like(iface, stats):
            logger.debug(f"Skipping adapter '{iface}'")
            continue
        for addr in iface_addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            try:
                network = ipaddress.ip_network(f"{addr.address}/{addr.netmask}", strict=False)
            except ValueError:
                continue
            if network.is_loopback or network.is_link_local:
                continue
            broadcast = addr.broadcast or str(network.broadcast_address)
            subnets.append(LocalSubnet(iface, addr.address, network, broadcast))
            logger.debug(f"Adapter '{iface}' contributes subnet {network}")

    subnets.sort(key=lambda s: _score_interface(s.interface, stats), reverse=True)
    if not subnets:
        logger.warning("No Ethernet-like adapter with an IPv4 address was found.")
    return subnets


def get_broadcast_addresses() -> List[str]:
    """Broadcast address of every local subnet plus the limited broadcast."""
    result = ["255.255.255.255"]
    for subnet in get_local_subnets():
        if subnet.broadcast not in result:
            result.append(subnet.broadcast)
    return result
