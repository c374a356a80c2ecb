"""
Active Directory client for the SPN and server sweeps.

One bound connection serves both sweeps. Searches are paged by ldap3.
"""
from __future__ import annotations
import logging
import os
import socket
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ldap3 import ALL, KERBEROS, NTLM, SASL, SIMPLE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from ..models import Credential

logger = logging.getLogger("sqlscout.directory")

SPN_SERVICE_CLASS = "MSSQLsvc"
_SPN_FILTER = f"(servicePrincipalName={SPN_SERVICE_CLASS}*)"
# Enabled computers only: bit 2 of userAccountControl is ACCOUNTDISABLE.
_SERVER_FILTER = ("(&(objectCategory=computer)"
                  "(!(userAccountControl:1.2.840.113556.1.4.803:=2))"
                  "(operatingSystem=*windows*server*))")


class DirectoryError(RuntimeError):
    """The directory could not be reached or searched."""


def parse_spn(spn: str) -> Tuple[str, Optional[str]]:
    """
    Splits 'MSSQLsvc/host1.contoso.com:1433' into ('host1.contoso.com', '1433').

    The suffix is None when the SPN carries no port or instance part.
    """
    _, _, rest = spn.partition('/')
    if not rest:
        rest = spn
    host, sep, suffix = rest.partition(':')
    return host.strip(), (suffix.strip() or None) if sep else None


def is_sql_spn(spn: str) -> bool:
    return spn.lower().startswith(SPN_SERVICE_CLASS.lower() + "/")


def _default_domain() -> Optional[str]:
    domain = os.environ.get("USERDNSDOMAIN")
    if domain:
        return domain.lower()
    fqdn = socket.getfqdn()
    if '.' in fqdn:
        return fqdn.split('.', 1)[1]
    return None


def _values(attributes: Dict[str, Any], key: str) -> List[str]:
    value = attributes.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return [str(value)] if value else []


def _first(attributes: Dict[str, Any], key: str) -> Optional[str]:
    values = _values(attributes, key)
    return values[0] if values else None


class DirectoryClient:
    """A bound directory connection plus the searches discovery needs."""

    def __init__(self, connection: Connection, search_base: str):
        self.connection = connection
        self.search_base = search_base
        # ldap3 SYNC connections are not thread-safe.
        self._lock = threading.Lock()

    @classmethod
    def bind(
        cls,
        controller: Optional[str] = None,
        credential: Optional[Credential] = None,
        timeout: float = 10.0,
    ) -> "DirectoryClient":
        """
        Binds to `controller`, or to the local machine's domain when none is
        given. Without a credential the current Kerberos identity is used.
        """
        host = controller or _default_domain()
        if not host:
            raise DirectoryError("No domain controller given and the local domain could not be determined.")

        try:
            server = Server(host, get_info=ALL, connect_timeout=timeout)
            if credential is None:
                conn = Connection(server, authentication=SASL, sasl_mechanism=KERBEROS,
                                  auto_bind=True, receive_timeout=timeout)
            elif '\\' in credential.username:
                conn = Connection(server, user=credential.username, password=credential.password,
                                  authentication=NTLM, auto_bind=True, receive_timeout=timeout)
            else:
                conn = Connection(server, user=credential.username, password=credential.password,
                                  authentication=SIMPLE, auto_bind=True, receive_timeout=timeout)
        except LDAPException as e:
            raise DirectoryError(f"Could not bind to directory '{host}': {e}") from e

        naming_contexts = server.info.other.get('defaultNamingContext') if server.info else None
        if not naming_contexts:
            raise DirectoryError(f"Directory '{host}' did not report a default naming context.")
        logger.info(f"Bound to directory {host} ({naming_contexts[0]})")
        return cls(conn, naming_contexts[0])

    def _search(self, search_filter: str, attributes: List[str]) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                entries = self.connection.extend.standard.paged_search(
                    search_base=self.search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=500,
                    generator=False,
                )
            except LDAPException as e:
                raise DirectoryError(f"Directory search failed: {e}") from e
        return [entry.get('attributes', {}) for entry in entries or [] if entry.get('type') == 'searchResEntry']

    @staticmethod
    def _spn_filter(host: Optional[str]) -> str:
        if not host:
            return _SPN_FILTER
        escaped = escape_filter_chars(host)
        short = escape_filter_chars(host.split('.')[0])
        return f"(&{_SPN_FILTER}(|(name={short})(dNSHostName={escaped})))"

    def find_spn_hosts(self, host: Optional[str] = None) -> Iterator[str]:
        """
        Host names of objects that register a SQL Server SPN.

        Prefers dNSHostName, then the host part of the first SQL SPN, then the
        object name.
        """
        seen = set()
        for attrs in self._search(self._spn_filter(host), ['name', 'dNSHostName', 'servicePrincipalName']):
            spn_hosts = [parse_spn(spn)[0] for spn in _values(attrs, 'servicePrincipalName') if is_sql_spn(spn)]
            name = _first(attrs, 'dNSHostName') or (spn_hosts[0] if spn_hosts else None) or _first(attrs, 'name')
            if name and name.lower() not in seen:
                seen.add(name.lower())
                yield name

    def find_spns(self, host: str) -> List[str]:
        """Raw SQL Server SPN strings registered for `host`."""
        spns: List[str] = []
        for attrs in self._search(self._spn_filter(host), ['servicePrincipalName']):
            for spn in _values(attrs, 'servicePrincipalName'):
                if is_sql_spn(spn) and spn not in spns:
                    spns.append(spn)
        return spns

    def find_servers(self) -> Iterator[str]:
        """Enabled Windows Server computer objects."""
        for attrs in self._search(_SERVER_FILTER, ['name', 'dNSHostName']):
            name = _first(attrs, 'dNSHostName') or _first(attrs, 'name')
            if name:
                yield name

    def close(self) -> None:
        try:
            self.connection.unbind()
        except LDAPException as e:
            logger.debug(f"Directory unbind failed: {e}")


class LazyDirectory:
    """
    Binds on first use and hands the same client to every caller.

    A failed bind is remembered so the SPN probe does not retry it per host.
    """

    def __init__(
        self,
        controller: Optional[str] = None,
        credential: Optional[Credential] = None,
        binder: Callable[..., DirectoryClient] = DirectoryClient.bind,
    ):
        self.controller = controller
        self.credential = credential
        self._binder = binder
        self._lock = threading.Lock()
        self._client: Optional[DirectoryClient] = None
        self._error: Optional[DirectoryError] = None

    def get(self) -> DirectoryClient:
        with self._lock:
            if self._client is not None:
                return self._client
            if self._error is not None:
                raise self._error
            try:
                self._client = self._binder(self.controller, self.credential)
            except DirectoryError as e:
                self._error = e
                raise
            return self._client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
