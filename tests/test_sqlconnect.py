from unittest.mock import MagicMock

import pytest

from sqlscout.checkers.sqlconnect import (
    IDENTITY_QUERY,
    ConnectionOutcome,
    SqlConnector,
    build_connection_string,
    classify_connection_error,
)
from sqlscout.models import Credential


class FakeOdbcError(Exception):
    """Shaped like pyodbc.Error: args are (sqlstate, message)."""


class TestConnectionString:
    def test_integrated_security_without_credential(self):
        cs = build_connection_string("SQL01\\PROD", "ODBC Driver 18 for SQL Server")
        assert cs.startswith("DRIVER={ODBC Driver 18 for SQL Server};SERVER=SQL01\\PROD;")
        assert "Trusted_Connection=yes" in cs
        assert "UID=" not in cs

    def test_sql_login_escapes_braces(self):
        cs = build_connection_string("SQL01,1433", "ODBC Driver 18 for SQL Server", Credential("sa", "p}w;d"))
        assert "UID=sa;" in cs
        assert "PWD={p}}w;d};" in cs
        assert "Trusted_Connection" not in cs


@pytest.mark.parametrize("error,expected", [
    (FakeOdbcError("28000", "[Microsoft][ODBC Driver 18 for SQL Server][SQL Server]Login failed for user 'x'."),
     ConnectionOutcome.REJECTED),
    (FakeOdbcError("42000", "[SQL Server]Cannot open database"), ConnectionOutcome.REJECTED),
    (FakeOdbcError("HY000", "[SQL Server]The server principal is not able to access the database"),
     ConnectionOutcome.REJECTED),
    (FakeOdbcError("HYT00", "[Microsoft][ODBC Driver 18 for SQL Server]Login timeout expired"),
     ConnectionOutcome.UNREACHABLE),
    (FakeOdbcError("08001", "[Microsoft][ODBC Driver 18 for SQL Server]TCP Provider: No such host is known."),
     ConnectionOutcome.UNREACHABLE),
    (FakeOdbcError("01000", "[unixODBC][Driver Manager]Can't open lib 'ODBC Driver 18 for SQL Server' : "
                            "file not found (0) (SQLDriverConnect)"),
     ConnectionOutcome.UNREACHABLE),
    (FakeOdbcError("01000", "[Microsoft][ODBC SQL Server Driver][DBNETLIB]ConnectionOpen (Connect())."),
     ConnectionOutcome.UNREACHABLE),
    (FakeOdbcError("01000", "[unixODBC][Driver Manager]Can't open lib '/opt/msodbcsql/lib64/libmsodbcsql.so' : "
                            "Permission denied"),
     ConnectionOutcome.UNREACHABLE),
    (OSError("connection reset"), ConnectionOutcome.UNREACHABLE),
])
def test_classify_connection_error(error, expected):
    assert classify_connection_error(error) is expected


def _connection(identity):
    connection = MagicMock()
    connection.cursor.return_value.fetchone.return_value = (identity,)
    return connection


class TestSqlConnector:
    def test_connected_reports_upper_case_server_identity(self):
        connection = _connection("sql01\\prod")
        connect = MagicMock(return_value=connection)
        result = SqlConnector(timeout=3, connect=connect).probe("SQL01,50123")
        assert result.outcome is ConnectionOutcome.CONNECTED
        assert result.server_identity == "SQL01\\PROD"
        assert result.reached_server
        connect.assert_called_once()
        assert connect.call_args.args[1] == 3
        connection.cursor.return_value.execute.assert_called_once_with(IDENTITY_QUERY)
        connection.close.assert_called_once_with()

    def test_login_failure_is_rejected(self):
        connect = MagicMock(side_effect=FakeOdbcError("28000", "Login failed for user 'scan'."))
        result = SqlConnector(connect=connect).probe("SQL01")
        assert result.outcome is ConnectionOutcome.REJECTED
        assert result.reached_server

    def test_network_failure_is_unreachable(self):
        connect = MagicMock(side_effect=FakeOdbcError("08001", "Named Pipes Provider: Could not open a connection"))
        result = SqlConnector(connect=connect).probe("GHOST")
        assert result.outcome is ConnectionOutcome.UNREACHABLE
        assert not result.reached_server

    def test_identity_query_failure_still_reached_server(self):
        connection = MagicMock()
        connection.cursor.return_value.execute.side_effect = FakeOdbcError("42000", "permission denied")
        result = SqlConnector(connect=MagicMock(return_value=connection)).probe("SQL01")
        assert result.outcome is ConnectionOutcome.REJECTED
        connection.close.assert_called_once_with()

    def test_missing_driver_library_does_not_upgrade_the_row(self):
        connect = MagicMock(side_effect=FakeOdbcError(
            "01000", "[unixODBC][Driver Manager]Can't open lib 'ODBC Driver 18 for SQL Server' : file not found"))
        result = SqlConnector(connect=connect).probe("SQL01")
        assert result.outcome is ConnectionOutcome.UNREACHABLE
        assert not result.reached_server

    def test_missing_driver_module_is_unreachable(self):
        connect = MagicMock(side_effect=ImportError("No module named 'pyodbc'"))
        result = SqlConnector(connect=connect).probe("SQL01")
        assert result.outcome is ConnectionOutcome.UNREACHABLE
