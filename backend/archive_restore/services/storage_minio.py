from __future__ import annotations

from pathlib import Path

from minio import Minio
from minio.error import S3Error

from archive_restore.services.storage_download import StorageDownloadError, verify_download

CHUNK_BYTES = 8 * 1024 * 1024


def get_minio_client(endpoint: str, access_key: str, secret_key: str, secure: bool) -> Minio:
    return Minio(endpoint=endpoint, access_key=access_key, secret_key=secret_key, secure=secure)


class MinioStorageDownloader:
    """S3-compatible object storage; large objects are fetched as ranged chunks."""

    def __init__(self, client: Minio, bucket: str, *, chunk_bytes: int = CHUNK_BYTES):
        self._client = client
        self._bucket = bucket
        self._chunk_bytes = chunk_bytes

    def download(self, source_ref: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._client.fget_object(bucket_name=self._bucket, object_name=source_ref, file_path=str(dest))
        except S3Error as exc:
            raise StorageDownloadError(f"object download failed ({exc.code}): {source_ref}") from exc
        return verify_download(dest)

    def download_chunked(self, source_ref: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            size = self._client.stat_object(bucket_name=self._bucket, object_name=source_ref).size or 0
            with dest.open("wb") as fp:
                offset = 0
                while offset < size:
                    length = min(self._chunk_bytes, size - offset)
                    response = self._client.get_object(
                        bucket_name=self._bucket, object_name=source_ref, offset=offset, length=length
                    )
                    try:
                        for data in response.stream(1024 * 1024):
                            fp.write(data)
                    finally:
                        response.close()
                        response.release_conn()
                    offset += length
        except S3Error as exc:
            dest.unlink(missing_ok=True)
            if exc.code in {"NoSuchKey", "NoSuchObject"}:
                raise StorageDownloadError(f"backup object not found: {source_ref}") from exc
            raise StorageDownloadError(f"object download failed ({exc.code}): {source_ref}") from exc
        return verify_download(dest)
