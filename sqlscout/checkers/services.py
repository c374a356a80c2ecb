"""
Remote enumeration of SQL Server related Windows services.

The query runs Get-CimInstance Win32_Service through a local PowerShell,
trying WSMan first and DCOM second, and returns the rows as JSON.
"""
from __future__ import annotations
import json
import logging
import os
import shutil
import subprocess
from typing import Any, Dict, List, Optional, Tuple

from ..models import DEFAULT_INSTANCE, Credential, ServiceInfo, ServiceType

logger = logging.getLogger("sqlscout.services")

_QUERY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$options = @{ ComputerName = $env:SQLSCOUT_TARGET }
if ($env:SQLSCOUT_USER) {
    $secure = ConvertTo-SecureString $env:SQLSCOUT_PASSWORD -AsPlainText -Force
    $options.Credential = New-Object System.Management.Automation.PSCredential($env:SQLSCOUT_USER, $secure)
}
try {
    $session = New-CimSession @options
} catch {
    $session = New-CimSession @options -SessionOption (New-CimSessionOption -Protocol Dcom)
}
try {
    Get-CimInstance -CimSession $session -ClassName Win32_Service -Filter "Name LIKE '%SQL%' OR Name LIKE 'MSOLAP%' OR Name LIKE 'ReportServer%' OR Name LIKE 'MsDtsServer%' OR Name LIKE 'PowerBIReportServer%'" |
        Select-Object Name, DisplayName, State, StartMode |
        ConvertTo-Json -Compress
} finally {
    Remove-CimSession $session
}
"""

# Service base name -> (type, belongs to the default instance when there is no $ suffix)
_SERVICE_TABLE: Dict[str, Tuple[ServiceType, bool]] = {
    "MSSQLSERVER": (ServiceType.ENGINE, True),
    "MSSQL": (ServiceType.ENGINE, True),
    "SQLSERVERAGENT": (ServiceType.AGENT, True),
    "SQLAGENT": (ServiceType.AGENT, True),
    "SQLBROWSER": (ServiceType.BROWSER, False),
    "MSSQLFDLAUNCHER": (ServiceType.FULL_TEXT, True),
    "MSSQLSERVEROLAPSERVICE": (ServiceType.SSAS, True),
    "MSOLAP": (ServiceType.SSAS, True),
    "REPORTSERVER": (ServiceType.SSRS, True),
    "SQLSERVERREPORTINGSERVICES": (ServiceType.SSRS, False),
    "POWERBIREPORTSERVER": (ServiceType.SSRS, False),
    "SQLWRITER": (ServiceType.VSS_WRITER, False),
    "MSSQLLAUNCHPAD": (ServiceType.LAUNCHPAD, True),
    "SQLPBENGINE": (ServiceType.POLYBASE, True),
    "SQLPBDMS": (ServiceType.POLYBASE, True),
    "SQLTELEMETRY": (ServiceType.TELEMETRY, True),
}
_PREFIX_TABLE: List[Tuple[str, ServiceType]] = [
    ("MSDTSSERVER", ServiceType.SSIS),
    ("SSASTELEMETRY", ServiceType.TELEMETRY),
    ("SSISTELEMETRY", ServiceType.TELEMETRY),
    ("SSISSCALEOUT", ServiceType.SSIS),
]


class ServiceQueryError(RuntimeError):
    """Remote service enumeration failed."""


def classify_service(service_name: str) -> Tuple[ServiceType, str]:
    """
    Derives the service type and instance name from a Windows service name.

    'MSSQL$PROD' -> (Engine, 'PROD'), 'MSSQLSERVER' -> (Engine, 'MSSQLSERVER'),
    'SQLBrowser' -> (Browser, '').
    """
    base, sep, suffix = service_name.partition('$')
    key = base.upper()
    if key in _SERVICE_TABLE:
        service_type, default_bound = _SERVICE_TABLE[key]
    else:
        service_type = next((t for prefix, t in _PREFIX_TABLE if key.startswith(prefix)), ServiceType.OTHER)
        default_bound = False
    if sep:
        return service_type, suffix
    return service_type, DEFAULT_INSTANCE if default_bound else ""


def _classify_error(stderr: str) -> str:
    """Maps typical PowerShell/CIM failures to a short reason."""
    text = stderr.lower()
    if any(token in text for token in ["timed out", "timeout", "operationtimedout"]):
        return "timeout connecting to the remote host"
    if any(token in text for token in ["access is denied", "unauthorized", "authentication"]):
        return "authentication on the remote host failed"
    if any(token in text for token in ["rpc server is unavailable", "winrm", "wsman", "cannot connect"]):
        return "remote management (WinRM/DCOM) is not reachable"
    return stderr.strip().splitlines()[-1] if stderr.strip() else "unknown error"


def _find_powershell() -> Optional[str]:
    for name in ("powershell", "pwsh"):
        path = shutil.which(name)
        if path:
            return path
    return None


def parse_service_rows(host: str, payload: str) -> List[ServiceInfo]:
    """Turns the JSON emitted by the query script into ServiceInfo records."""
    if not payload.strip():
        return []
    rows: Any = json.loads(payload)
    if isinstance(rows, dict):
        rows = [rows]
    services = []
    for row in rows:
        name = row.get("Name") or ""
        if not name:
            continue
        service_type, instance = classify_service(name)
        services.append(ServiceInfo(
            computer_name=host,
            service_name=name,
            instance_name=instance,
            service_type=service_type,
            state=str(row.get("State") or "Unknown"),
            display_name=row.get("DisplayName") or "",
            start_mode=str(row.get("StartMode") or ""),
        ))
    return services


def enumerate_services(
    host: str,
    credential: Optional[Credential] = None,
    timeout: float = 20.0,
) -> List[ServiceInfo]:
    """
    Lists SQL Server related services on `host`.

    Raises ServiceQueryError on any failure; callers treat that as no services.
    """
    executable = _find_powershell()
    if not executable:
        raise ServiceQueryError("PowerShell is not available on this machine.")

    env = os.environ.copy()
    env["SQLSCOUT_TARGET"] = host
    env.pop("SQLSCOUT_USER", None)
    env.pop("SQLSCOUT_PASSWORD", None)
    if credential is not None:
        env["SQLSCOUT_USER"] = credential.username
        env["SQLSCOUT_PASSWORD"] = credential.password

    try:
        result = subprocess.run(
            [executable, "-NoProfile", "-NonInteractive", "-Command", _QUERY_SCRIPT],
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            env=env,
            check=False,
        )
    except (subprocess.TimeoutExpired, OSError, UnicodeDecodeError) as e:
        raise ServiceQueryError(f"Service query for {host} did not complete: {e}") from e

    if result.returncode != 0:
        raise ServiceQueryError(f"Service query for {host} failed: {_classify_error(result.stderr)}")
    try:
        services = parse_service_rows(host, result.stdout)
    except (ValueError, AttributeError) as e:
        raise ServiceQueryError(f"Unexpected service query output from {host}: {e}") from e
    logger.debug(f"Found {len(services)} SQL related service(s) on {host}")
    return services
