from __future__ import annotations

import enum

from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, OperationalError, ProgrammingError


class SqlErrorKind(str, enum.Enum):
    CRITICAL = "critical"
    DATA = "data"
    TRANSIENT = "transient"


# MySQL server error numbers, see the server error message reference.
MYSQL_CRITICAL_CODES = frozenset(
    {
        1005,  # can't create table
        1049,  # unknown database
        1050,  # table already exists
        1051,  # unknown table
        1054,  # unknown column
        1060,  # duplicate column name
        1061,  # duplicate key name
        1064,  # syntax error
        1067,  # invalid default value
        1071,  # key too long
        1091,  # can't drop field or key
        1109,  # unknown table in statement
        1113,  # table must have at least one column
        1115,  # unknown character set
        1117,  # too many columns
        1118,  # row size too large
        1146,  # table doesn't exist
        1166,  # incorrect column name
        1170,  # blob/text column used in key without length
        1215,  # cannot add foreign key constraint
        1273,  # unknown collation
        1286,  # unknown storage engine
    }
)
MYSQL_DATA_CODES = frozenset({1048, 1062, 1264, 1366, 1406, 1451, 1452})
MYSQL_TRANSIENT_CODES = frozenset({1205, 1213, 2006, 2013})

# SQLite primary result codes (extended code & 0xff).
SQLITE_ERROR = 1
SQLITE_BUSY = 5
SQLITE_LOCKED = 6
SQLITE_TOOBIG = 18
SQLITE_CONSTRAINT = 19
SQLITE_MISMATCH = 20


class SqlExecutionError(RuntimeError):
    def __init__(self, message: str, *, kind: SqlErrorKind, code: int | str | None = None, statement: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.statement = statement
        self.message = message

    @property
    def is_critical(self) -> bool:
        return self.kind == SqlErrorKind.CRITICAL


def driver_error_code(exc: BaseException) -> tuple[str, int | str] | None:
    orig = exc.orig if isinstance(exc, DBAPIError) else exc

    sqlite_code = getattr(orig, "sqlite_errorcode", None)
    if isinstance(sqlite_code, int):
        return "sqlite", sqlite_code & 0xFF

    sqlstate = getattr(orig, "sqlstate", None)
    if isinstance(sqlstate, str) and sqlstate:
        return "sqlstate", sqlstate

    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int):
        return "mysql", args[0]
    return None


def _classify_code(family: str, code: int | str) -> SqlErrorKind | None:
    if family == "mysql":
        if code in MYSQL_CRITICAL_CODES:
            return SqlErrorKind.CRITICAL
        if code in MYSQL_DATA_CODES:
            return SqlErrorKind.DATA
        if code in MYSQL_TRANSIENT_CODES:
            return SqlErrorKind.TRANSIENT
        return None
    if family == "sqlite":
        if code == SQLITE_ERROR:
            return SqlErrorKind.CRITICAL
        if code in {SQLITE_CONSTRAINT, SQLITE_MISMATCH, SQLITE_TOOBIG}:
            return SqlErrorKind.DATA
        if code in {SQLITE_BUSY, SQLITE_LOCKED}:
            return SqlErrorKind.TRANSIENT
        return None
    if family == "sqlstate":
        sqlstate = str(code)
        if sqlstate.startswith(("42", "3F", "3D")):
            return SqlErrorKind.CRITICAL
        if sqlstate.startswith(("22", "23")):
            return SqlErrorKind.DATA
        if sqlstate.startswith(("08", "40", "57")):
            return SqlErrorKind.TRANSIENT
    return None


def classify_sql_error(exc: BaseException) -> SqlErrorKind:
    if isinstance(exc, SqlExecutionError):
        return exc.kind

    driver_code = driver_error_code(exc)
    if driver_code is not None:
        kind = _classify_code(*driver_code)
        if kind is not None:
            return kind

    if isinstance(exc, ProgrammingError):
        return SqlErrorKind.CRITICAL
    if isinstance(exc, (IntegrityError, DataError)):
        return SqlErrorKind.DATA
    if isinstance(exc, OperationalError):
        return SqlErrorKind.TRANSIENT
    if isinstance(exc, (FileNotFoundError, UnicodeError)):
        return SqlErrorKind.CRITICAL
    return SqlErrorKind.DATA


def to_sql_execution_error(exc: BaseException, *, statement: str | None = None) -> SqlExecutionError:
    if isinstance(exc, SqlExecutionError):
        return exc
    driver_code = driver_error_code(exc)
    orig = exc.orig if isinstance(exc, DBAPIError) else exc
    return SqlExecutionError(
        str(orig),
        kind=classify_sql_error(exc),
        code=driver_code[1] if driver_code else None,
        statement=statement[:200] if statement else None,
    )
