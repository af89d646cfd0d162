from __future__ import annotations

import enum


class RestoreErrorKind(str, enum.Enum):
    CONFIGURATION = "configuration"
    CONNECTIVITY = "connectivity"
    PERMISSION = "permission"
    ITEM = "item"
    CRITICAL_DATA = "critical_data"
    EXTRACTION = "extraction"
    STATE = "state"


class RestoreErrorCode:
    CONFIG_MISSING = "CONFIG_MISSING"
    CONFIG_INVALID = "CONFIG_INVALID"
    CONNECT_FAIL = "CONNECT_FAIL"
    RECONNECT_EXHAUSTED = "RECONNECT_EXHAUSTED"
    WRITE_PROBE_FAIL = "WRITE_PROBE_FAIL"
    DB_PERMISSION = "DB_PERMISSION"
    DB_CONNECT_FAIL = "DB_CONNECT_FAIL"
    TABLE_CRITICAL = "TABLE_CRITICAL"
    BACKUP_NOT_FOUND = "BACKUP_NOT_FOUND"
    DOWNLOAD_FAIL = "DOWNLOAD_FAIL"
    EXTRACT_FAIL = "EXTRACT_FAIL"
    EXTRACT_VERIFY_FAIL = "EXTRACT_VERIFY_FAIL"
    BACKUP_EMPTY = "BACKUP_EMPTY"
    BACKUP_HAS_CRITICAL_ERRORS = "BACKUP_HAS_CRITICAL_ERRORS"
    SCAN_FAIL = "SCAN_FAIL"
    STALLED = "STALLED"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN_PHASE = "UNKNOWN_PHASE"


class RestoreError(RuntimeError):
    def __init__(self, code: str, message: str, *, kind: RestoreErrorKind):
        super().__init__(message)
        self.code = code
        self.kind = kind
        self.message = message

    @property
    def is_fatal(self) -> bool:
        return self.kind != RestoreErrorKind.ITEM
