from __future__ import annotations

from collections.abc import Callable

from archive_restore.core.config import Settings
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind
from archive_restore.services.transport import ConnectionConfig, TransportAdapter, TransportError, TransportErrorKind
from archive_restore.services.transport_ftp import FtpTransport
from archive_restore.services.transport_local import LocalTransport
from archive_restore.services.transport_sftp import SftpTransport

TransportFactory = Callable[[ConnectionConfig], TransportAdapter]

_ADAPTERS: dict[str, type[TransportAdapter]] = {
    "ftp": FtpTransport,
    "sftp": SftpTransport,
    "local": LocalTransport,
}


def connection_config_from_settings(settings: Settings) -> ConnectionConfig:
    if not settings.installation_method:
        raise RestoreError(
            RestoreErrorCode.CONFIG_MISSING,
            "Installation connection is not configured",
            kind=RestoreErrorKind.CONFIGURATION,
        )
    values = {
        "host": settings.installation_host,
        "port": settings.installation_port,
        "username": settings.installation_username,
        "password": settings.installation_password,
        "path": settings.installation_path,
        "sftp_backend": settings.sftp_backend,
    }
    try:
        config = ConnectionConfig.from_mapping(
            settings.installation_method, values, timeout_seconds=settings.connect_timeout_seconds
        )
        config.validate()
    except TransportError as exc:
        raise RestoreError(RestoreErrorCode.CONFIG_INVALID, exc.message, kind=RestoreErrorKind.CONFIGURATION) from exc
    return config


def build_transport(config: ConnectionConfig) -> TransportAdapter:
    adapter_cls = _ADAPTERS.get(config.method)
    if adapter_cls is None:
        raise RestoreError(
            RestoreErrorCode.CONFIG_INVALID,
            f"Invalid connection method: {config.method}",
            kind=RestoreErrorKind.CONFIGURATION,
        )
    return adapter_cls(config)


def as_restore_error(exc: TransportError) -> RestoreError:
    if exc.kind == TransportErrorKind.CONFIG:
        return RestoreError(RestoreErrorCode.CONFIG_INVALID, exc.message, kind=RestoreErrorKind.CONFIGURATION)
    if exc.kind == TransportErrorKind.PERMISSION:
        return RestoreError(RestoreErrorCode.WRITE_PROBE_FAIL, exc.message, kind=RestoreErrorKind.PERMISSION)
    return RestoreError(RestoreErrorCode.CONNECT_FAIL, exc.message, kind=RestoreErrorKind.CONNECTIVITY)
