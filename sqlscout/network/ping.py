"""
ICMP echo probe.

Uses a raw socket when the process is privileged and falls back to the
system `ping` command otherwise.
"""
import ctypes
import logging
import os
import platform
import random
import re
import select
import socket
import struct
import subprocess
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from ..models import PingResult
from .utils import _resolve_addresses

logger = logging.getLogger("sqlscout.ping")

ICMP_ECHO_REQUEST = 8
ICMP_ECHO_REPLY = 0
ICMPV6_ECHO_REQUEST = 128
ICMPV6_ECHO_REPLY = 129


def has_raw_socket_rights() -> bool:
    """True when running as administrator (Windows) or root (POSIX)."""
    try:
        if platform.system() == "Windows":
            return ctypes.windll.shell32.IsUserAnAdmin() != 0  # type: ignore[attr-defined]
        if hasattr(os, 'geteuid'):
            return os.geteuid() == 0  # type: ignore[attr-defined]  # pylint: disable=no-member
        return False
    except AttributeError:
        return False


@dataclass
class ICMPPacket:
    type: int
    code: int
    identifier: int
    sequence: int
    payload: bytes = b""

    def pack(self) -> bytes:
        header = struct.pack('!BBHHH', self.type, self.code, 0, self.identifier, self.sequence)
        checksum = self.checksum(header + self.payload)
        return struct.pack('!BBHHH', self.type, self.code, checksum, self.identifier, self.sequence) + self.payload

    @classmethod
    def unpack(cls, data: bytes) -> Optional["ICMPPacket"]:
        if len(data) < 8:
            return None
        icmp_type, code, _, identifier, sequence = struct.unpack('!BBHHH', data[:8])
        return cls(icmp_type, code, identifier, sequence, data[8:])

    @staticmethod
    def checksum(data: bytes) -> int:
        if len(data) % 2:
            data += b'\x00'
        res = sum(struct.unpack('!%dH' % (len(data) // 2), data))
        res = (res >> 16) + (res & 0xffff)
        res += res >> 16
        return ~res & 0xffff


def _icmp_payload(data: bytes, is_ipv6: bool) -> bytes:
    """IPv4 raw sockets hand back the IP header too; IPv6 ones do not."""
    if is_ipv6 or not data:
        return data
    header_length = (data[0] & 0x0f) * 4
    return data[header_length:]


class ICMPPinger:
    """Sends ICMP echo requests on a raw socket and waits for the matching reply."""

    def __init__(self, timeout: float = 1.0):
        self.timeout = timeout
        self.sequence = random.randint(0, 0xffff)
        self.identifier = random.randint(0, 0xffff)

    def ping(self, host: str) -> Tuple[bool, float]:
        """Send one echo request; returns (replied, round trip in ms)."""
        is_ipv6 = ':' in host
        family = socket.AF_INET6 if is_ipv6 else socket.AF_INET
        proto = socket.IPPROTO_ICMPV6 if is_ipv6 else socket.IPPROTO_ICMP
        request_type, reply_type = (ICMPV6_ECHO_REQUEST, ICMPV6_ECHO_REPLY) if is_ipv6 \
            else (ICMP_ECHO_REQUEST, ICMP_ECHO_REPLY)
        self.sequence = (self.sequence + 1) & 0xffff
        packet = ICMPPacket(request_type, 0, self.identifier, self.sequence, struct.pack('d', time.time()))

        try:
            with socket.socket(family, socket.SOCK_RAW, proto) as sock:
                sock.sendto(packet.pack(), (host.split('%')[0], 0))
                start = time.monotonic()
                deadline = start + self.timeout
                while True:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False, 0.0
                    ready, _, _ = select.select([sock], [], [], remaining)
                    if not ready:
                        return False, 0.0
                    data, _ = sock.recvfrom(1024)
                    reply = ICMPPacket.unpack(_icmp_payload(data, is_ipv6))
                    # Raw sockets see every ICMP packet on the host; skip the ones that are not ours.
                    if reply and reply.type == reply_type and reply.identifier == self.identifier \
                            and reply.sequence == self.sequence:
                        return True, round((time.monotonic() - start) * 1000, 1)
        except OSError as e:
            logger.debug(f"Raw ICMP ping of {host} failed: {e}")
            return False, 0.0


_LATENCY_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)


def _system_ping(host: str, timeout: float) -> Tuple[bool, float]:
    """Runs the platform ping command once; used when raw sockets are not allowed."""
    if platform.system() == "Windows":
        command = ["ping", "-n", "1", "-w", str(int(timeout * 1000)), host]
    else:
        command = ["ping", "-c", "1", "-W", str(max(1, int(round(timeout)))), host]
    try:
        result = subprocess.run(command, capture_output=True, text=True, errors="replace", timeout=timeout + 2)
    except (subprocess.TimeoutExpired, OSError, UnicodeDecodeError) as e:
        logger.debug(f"System ping failed for {host}: {e}")
        return False, 0.0
    # Windows ping returns 0 for "Destination host unreachable" replies.
    if result.returncode != 0 or "unreachable" in result.stdout.lower():
        return False, 0.0
    match = _LATENCY_RE.search(result.stdout)
    return True, float(match.group(1)) if match else 0.0


def _select_ping_target(host: str) -> str:
    """Choose a concrete IP address to ping, preferring IPv4."""
    addrs = _resolve_addresses(host)
    v4 = [a for a in addrs if a[0] == socket.AF_INET]
    v6 = [a for a in addrs if a[0] == socket.AF_INET6]
    if v4:
        return v4[0][1]
    if v6:
        ip, scope = v6[0][1], v6[0][3]
        return f"{ip}%{scope}" if scope else ip
    return host


def ping_host(host: str, timeout: float = 1.0) -> PingResult:
    """Sends a single echo request; no reply means success=False."""
    concrete_ip = _select_ping_target(host)
    if has_raw_socket_rights():
        success, latency = ICMPPinger(timeout=timeout).ping(concrete_ip)
    else:
        success, latency = _system_ping(concrete_ip, timeout)
    return PingResult(host=host, success=success, latency_ms=latency if success else None)
