"""
Command-line interface for sqlscout.
"""
from __future__ import annotations
import argparse
import getpass
import json
import logging
import sys
from typing import Any, Dict, Iterable, List, Optional, TextIO

import yaml

from . import configuration
from .finder import InstanceFinder
from .models import (
    Confidence,
    Credential,
    DiscoveryRequest,
    ScanReport,
    parse_discovery_types,
    parse_scan_types,
)
from .parsing import parse_ports

_TABLE_COLUMNS = ["ComputerName", "InstanceName", "Port", "Confidence", "Availability", "TcpConnected", "SqlConnected"]


def _split_list(values: Optional[List[str]]) -> List[str]:
    items: List[str] = []
    for value in values or []:
        items.extend(v.strip() for v in value.split(',') if v.strip())
    return items


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sqlscout",
        description="Find SQL Server instances on hosts, IP ranges or the Active Directory domain.",
    )
    parser.add_argument("-c", "--computer", action="append",
                        help="Host to scan (repeatable, comma-separated; '-' reads hosts from stdin).")
    parser.add_argument("-d", "--discovery-type", action="append",
                        help="IPRange, DomainSPN, DomainServer, DataSourceEnumeration or All.")
    parser.add_argument("--ip-range", action="append",
                        help="Address, a.b.c.d-a.b.c.e, CIDR (/8-/31) or address/mask. Implies IPRange.")
    parser.add_argument("-s", "--scan-type", action="append",
                        help="Browser, SqlService, SPN, TCPPort, DNSResolve, SqlConnect, Ping, Default or All.")
    parser.add_argument("-p", "--port", help="Comma-separated TCP ports to probe (default from config: 1433).")
    parser.add_argument("--domain-controller", help="Directory server used for the SPN and server sweeps.")
    parser.add_argument("--credential-user", help="Windows/directory user (DOMAIN\\user or user@domain).")
    parser.add_argument("--credential-password", help="Password for --credential-user (prompted when omitted).")
    parser.add_argument("--sql-user", help="SQL login for the SqlConnect probe (Windows authentication when omitted).")
    parser.add_argument("--sql-password", help="Password for --sql-user (prompted when omitted).")
    parser.add_argument("-m", "--min-confidence", help="None, Low, Medium or High.")
    parser.add_argument("-f", "--format", choices=["table", "json", "yaml"], help="Output format.")
    parser.add_argument("--config", help="Path to the YAML configuration file (default: config.yaml).")
    parser.add_argument("--write-config", action="store_true",
                        help="Save the effective settings back to the configuration file.")
    parser.add_argument("-w", "--workers", type=int, help="Number of hosts scanned in parallel.")
    parser.add_argument("--strict", action="store_true", help="Fail instead of ignoring SQL Browser errors.")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Warnings and errors only.")
    return parser


def _credential(user: Optional[str], password: Optional[str], prompt: str) -> Optional[Credential]:
    if not user:
        return None
    if password is None:
        password = getpass.getpass(prompt.format(user=user))
    return Credential(user, password)


def _merge_config(args: argparse.Namespace, config: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(config)
    if args.port:
        merged['tcp_ports'] = parse_ports(args.port)
    if args.scan_type:
        merged['scan_types'] = _split_list(args.scan_type)
    if args.discovery_type:
        merged['discovery_types'] = _split_list(args.discovery_type)
    if args.min_confidence:
        merged['min_confidence'] = args.min_confidence
    if args.domain_controller:
        merged['domain_controller'] = args.domain_controller
    if args.format:
        merged['output_format'] = args.format
    if args.workers is not None:
        merged['max_workers'] = args.workers
    return merged


def build_request(args: argparse.Namespace, config: Dict[str, Any], stdin: Optional[TextIO] = None) -> DiscoveryRequest:
    """Translates parsed arguments and configuration into a DiscoveryRequest."""
    hosts = _split_list([c for c in args.computer or [] if c != '-'])
    if args.computer and '-' in args.computer:
        hosts.extend(line.strip() for line in (stdin or sys.stdin) if line.strip())

    return DiscoveryRequest(
        hosts=hosts,
        discovery_types=parse_discovery_types(config.get('discovery_types') or []),
        ip_ranges=_split_list(args.ip_range),
        scan_types=parse_scan_types(config.get('scan_types') or []),
        ports=parse_ports(config.get('tcp_ports') or [1433]),
        credential=_credential(args.credential_user, args.credential_password, "Password for {user}: "),
        sql_credential=_credential(args.sql_user, args.sql_password, "SQL password for {user}: "),
        domain_controller=config.get('domain_controller'),
        min_confidence=Confidence.parse(config.get('min_confidence') or 'Low'),
        raise_errors=args.strict,
    )


def render_table(rows: List[Dict[str, Any]], out: TextIO) -> None:
    if not rows:
        print("No SQL Server instances found.", file=out)
        return
    cells = [[("" if row.get(col) is None else str(row.get(col))) for col in _TABLE_COLUMNS] for row in rows]
    widths = [max(len(col), *(len(c[i]) for c in cells)) for i, col in enumerate(_TABLE_COLUMNS)]
    print("  ".join(col.ljust(w) for col, w in zip(_TABLE_COLUMNS, widths)), file=out)
    print("  ".join("-" * w for w in widths), file=out)
    for c in cells:
        print("  ".join(v.ljust(w) for v, w in zip(c, widths)), file=out)


def render(reports: Iterable[ScanReport], output_format: str, out: Optional[TextIO] = None) -> int:
    """Writes the reports in the chosen format and returns the number of rows."""
    out = out or sys.stdout
    rows = [report.to_dict() for report in reports]
    if output_format == "json":
        json.dump(rows, out, indent=2)
        out.write("\n")
    elif output_format == "yaml":
        yaml.safe_dump(rows, out, sort_keys=False, default_flow_style=False)
    else:
        render_table(rows, out)
    return len(rows)


def main(argv: Optional[List[str]] = None) -> int:
    """Parses arguments, runs discovery and prints the result. Returns the exit code."""
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s', stream=sys.stderr)

    try:
        config = _merge_config(args, configuration.load_or_create_config(args.config))
        request = build_request(args, config)
        finder = InstanceFinder(config)
        reports = finder.find(request)
    except ValueError as e:
        logging.error(str(e))
        return 2

    if args.write_config:
        configuration.save_config(config, args.config)

    count = render(reports, config.get('output_format', 'table'))
    logging.info(f"{count} row(s) written")
    return 0
