"""
Authenticated connection probe against a SQL Server instance (pyodbc).

A probe ends in one of three states. CONNECTED carries the server's own
name, used to fold rows that reach the same instance. REJECTED means a
server answered but refused the login or the request. UNREACHABLE covers
everything else.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from ..models import Credential

logger = logging.getLogger("sqlscout.sqlconnect")

IDENTITY_QUERY = "SELECT CAST(SERVERPROPERTY('ServerName') AS nvarchar(256))"

# SQLSTATEs for a login the server refused and for server-side access errors.
_REJECTED_SQLSTATES = {"28000", "42000"}
# Only messages raised by the server itself carry the [SQL Server] component tag.
_SERVER_MARKER = "[sql server]"


class ConnectionOutcome(Enum):
    CONNECTED = "connected"
    REJECTED = "rejected"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class ConnectionResult:
    outcome: ConnectionOutcome
    server_identity: Optional[str] = None
    error: Optional[str] = None

    @property
    def reached_server(self) -> bool:
        return self.outcome in (ConnectionOutcome.CONNECTED, ConnectionOutcome.REJECTED)


def build_connection_string(
    address: str,
    driver: str,
    credential: Optional[Credential] = None,
    database: str = "master",
) -> str:
    """ODBC connection string for `address` (HOST, HOST\\INSTANCE or HOST,PORT)."""
    parts = [
        f"DRIVER={{{driver}}}",
        f"SERVER={address}",
        f"DATABASE={database}",
        "Encrypt=yes",
        "TrustServerCertificate=yes",
        "APP=sqlscout",
    ]
    if credential is None:
        parts.append("Trusted_Connection=yes")
    else:
        parts.append(f"UID={credential.username}")
        parts.append("PWD={" + credential.password.replace("}", "}}") + "}")
    return ";".join(parts) + ";"


def classify_connection_error(exc: BaseException) -> ConnectionOutcome:
    """
    Decides whether a failed connection still proves a server answered.

    pyodbc errors carry (sqlstate, message) in args.
    """
    args = getattr(exc, "args", ()) or ()
    sqlstate = str(args[0]) if args else ""
    message = " ".join(str(a) for a in args).lower()
    if sqlstate in _REJECTED_SQLSTATES:
        return ConnectionOutcome.REJECTED
    if _SERVER_MARKER in message:
        return ConnectionOutcome.REJECTED
    return ConnectionOutcome.UNREACHABLE


def _pyodbc_connect(connection_string: str, timeout: int) -> Any:
    import pyodbc
    return pyodbc.connect(connection_string, timeout=timeout, autocommit=True)


class SqlConnector:
    """Opens a short-lived connection per address and reports the outcome."""

    def __init__(
        self,
        driver: str = "ODBC Driver 18 for SQL Server",
        credential: Optional[Credential] = None,
        timeout: int = 5,
        connect: Optional[Callable[[str, int], Any]] = None,
    ):
        self.driver = driver
        self.credential = credential
        self.timeout = timeout
        self._connect = connect or _pyodbc_connect

    def probe(self, address: str) -> ConnectionResult:
        connection_string = build_connection_string(address, self.driver, self.credential)
        try:
            connection = self._connect(connection_string, self.timeout)
        except ImportError as e:
            logger.error(f"pyodbc is not installed; cannot test SQL connections: {e}")
            return ConnectionResult(ConnectionOutcome.UNREACHABLE, error=str(e))
        except Exception as e:
            outcome = classify_connection_error(e)
            logger.debug(f"Connection to {address} failed ({outcome.value}): {e}")
            return ConnectionResult(outcome, error=str(e))

        try:
            cursor = connection.cursor()
            cursor.execute(IDENTITY_QUERY)
            row = cursor.fetchone()
            identity = str(row[0]).upper() if row and row[0] else address.upper()
        except Exception as e:
            logger.debug(f"Connected to {address} but the identity query failed: {e}")
            return ConnectionResult(ConnectionOutcome.REJECTED, error=str(e))
        finally:
            connection.close()
        logger.info(f"Connected to {address} as server {identity}")
        return ConnectionResult(ConnectionOutcome.CONNECTED, server_identity=identity)
