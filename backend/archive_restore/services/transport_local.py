from __future__ import annotations

import os
import shutil
import uuid
from collections.abc import Set as AbstractSet
from pathlib import Path

import structlog

from archive_restore.services.transport import (
    ConnectionConfig,
    TransportAdapter,
    TransportError,
    TransportErrorKind,
    normalize_relative,
    path_components,
)

logger = structlog.get_logger(__name__)

COPY_CHUNK_BYTES = 1024 * 1024


class LocalTransport(TransportAdapter):
    method = "local"

    def __init__(self, config: ConnectionConfig):
        super().__init__(config)
        self.root = Path(config.path)

    def _target(self, relative_path: str) -> Path:
        rel = normalize_relative(relative_path)
        return self.root / rel if rel else self.root

    def connect(self) -> None:
        if not self.config.path:
            raise TransportError("Local path is not configured", kind=TransportErrorKind.CONFIG)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TransportError(
                f"Could not create local directory: {exc}", kind=TransportErrorKind.PERMISSION, path=str(self.root)
            ) from exc

    def health_check(self) -> bool:
        return True

    def ensure_directory(self, relative_path: str, known_directories: AbstractSet[str] = frozenset()) -> None:
        rel = normalize_relative(relative_path)
        if not rel:
            return
        target = self.root / rel
        try:
            target.mkdir(parents=True, exist_ok=True)
            return
        except FileExistsError as exc:
            raise TransportError(
                f"Path exists and is not a directory: {rel}", kind=TransportErrorKind.OPERATION, path=rel
            ) from exc
        except OSError as exc:
            logger.warning("local_mkdir_direct_failed", path=rel, error=str(exc))

        for component in path_components(rel):
            if component in known_directories:
                continue
            step = self.root / component
            if step.is_dir():
                continue
            try:
                step.mkdir()
            except FileExistsError:
                if not step.is_dir():
                    raise TransportError(
                        f"Path exists and is not a directory: {component}",
                        kind=TransportErrorKind.OPERATION,
                        path=component,
                    ) from None
            except OSError as exc:
                raise TransportError(
                    f"Failed to create directory {component}: {exc}", kind=TransportErrorKind.OPERATION, path=component
                ) from exc

    def put_file(self, source_path: str, relative_target: str) -> int:
        target = self._target(relative_target)
        try:
            shutil.copyfile(source_path, target)
        except OSError as exc:
            logger.warning("local_copy_failed_streaming", path=relative_target, error=str(exc))
            self._stream_copy(source_path, target, relative_target)
        return target.stat().st_size

    def _stream_copy(self, source_path: str, target: Path, relative_target: str) -> None:
        tmp_path = target.with_name(f"{target.name}.uploading")
        try:
            with open(source_path, "rb") as src, open(tmp_path, "wb") as dst:
                shutil.copyfileobj(src, dst, length=COPY_CHUNK_BYTES)
            os.replace(tmp_path, target)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise TransportError(
                f"Failed to copy file {relative_target}: {exc}", kind=TransportErrorKind.OPERATION, path=relative_target
            ) from exc

    def list_entries(self, relative_path: str = "") -> list[str]:
        target = self._target(relative_path)
        try:
            return sorted(entry.name for entry in target.iterdir())
        except OSError as exc:
            raise TransportError(
                f"Cannot list {relative_path or '/'}: {exc}", kind=TransportErrorKind.OPERATION, path=relative_path
            ) from exc

    def probe_write_access(self) -> None:
        probe = self.root / f".restore_probe_{uuid.uuid4().hex[:8]}"
        try:
            probe.write_text("restore write probe", encoding="utf-8")
            probe.unlink()
        except OSError as exc:
            raise TransportError(
                "No write permission to local directory", kind=TransportErrorKind.PERMISSION, path=str(self.root)
            ) from exc

    def close(self) -> None:
        return None
