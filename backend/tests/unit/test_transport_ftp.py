import ftplib
import posixpath
import time
from datetime import datetime, timezone

import pytest

from archive_restore.schemas.restore import RestorePhase, RestoreStatus
from archive_restore.services.file_restore import FileRestoreEngine
from archive_restore.services.resource_monitor import StaticResourceMonitor
from archive_restore.services.transport import ConnectionConfig, TransportError, TransportErrorKind
from archive_restore.services.transport_ftp import CHUNK_BYTES, FtpTransport


class FakeFTP:
    """In-memory FTP server with the subset of ftplib.FTP the adapter uses."""

    def __init__(self, *, bad_logins: int = 0, relative_stor_fails: bool = False, new_file_needs_create: bool = False):
        self.dirs = {"/"}
        self.files: dict[str, bytearray] = {}
        self.cwd_path = "/"
        self.bad_logins = bad_logins
        self.relative_stor_fails = relative_stor_fails
        self.new_file_needs_create = new_file_needs_create
        self.stor_calls: list[tuple[str, int | None, int]] = []
        self.connected = False
        self.pasv = None

    def _resolve(self, path: str) -> str:
        return posixpath.normpath(posixpath.join(self.cwd_path, path))

    def connect(self, host, port, timeout=None):
        self.connected = True
        return "220 ok"

    def login(self, user, passwd):
        if self.bad_logins > 0:
            self.bad_logins -= 1
            raise ftplib.error_perm("530 Login incorrect")
        return "230 ok"

    def set_pasv(self, value):
        self.pasv = value

    def pwd(self):
        if not self.connected:
            raise ConnectionResetError("closed")
        return self.cwd_path

    def cwd(self, path):
        target = self._resolve(path)
        if target not in self.dirs:
            raise ftplib.error_perm(f"550 {path}: No such directory")
        self.cwd_path = target
        return "250 ok"

    def mkd(self, path):
        target = self._resolve(path)
        if target in self.dirs or target in self.files:
            raise ftplib.error_perm("550 File exists")
        if posixpath.dirname(target) not in self.dirs:
            raise ftplib.error_perm("550 No such directory")
        self.dirs.add(target)
        return target

    def rmd(self, path):
        self.dirs.discard(self._resolve(path))

    def delete(self, path):
        self.files.pop(self._resolve(path), None)

    def storbinary(self, cmd, fp, blocksize=8192, callback=None, rest=None):
        name = cmd.split(" ", 1)[1]
        if self.relative_stor_fails and not name.startswith("/"):
            raise ftplib.error_perm("553 Could not create file")
        target = self._resolve(name)
        if posixpath.dirname(target) not in self.dirs:
            raise ftplib.error_perm("553 No such directory")
        data = fp.read()
        if self.new_file_needs_create and data and target not in self.files:
            raise ftplib.error_perm("553 Could not create file")
        self.stor_calls.append((target, rest, len(data)))
        buf = self.files.setdefault(target, bytearray()) if rest else bytearray()
        offset = int(rest or 0)
        buf[offset : offset + len(data)] = data
        self.files[target] = buf
        return "226 ok"

    def nlst(self, path):
        target = self._resolve(path)
        names = [p for p in self.dirs | set(self.files) if p != target and posixpath.dirname(p) == target]
        if not names:
            raise ftplib.error_perm("550 No files found")
        return names

    def quit(self):
        self.connected = False

    def close(self):
        self.connected = False


def _transport(fake: FakeFTP, path: str = "/public_html/site", sleeps=None) -> FtpTransport:
    config = ConnectionConfig(method="ftp", path=path, host="ftp.example.com", username="user", password="pw")
    return FtpTransport(config, ftp_factory=lambda: fake, sleep=(sleeps.append if sleeps is not None else lambda _s: None))


def test_connect_creates_base_path_and_uses_passive_mode():
    fake = FakeFTP()
    transport = _transport(fake)

    transport.connect()

    assert {"/public_html", "/public_html/site"} <= fake.dirs
    assert fake.pasv is True
    assert transport.health_check() is True


def test_login_is_retried_before_auth_error():
    fake = FakeFTP(bad_logins=3)
    sleeps = []
    transport = _transport(fake, sleeps=sleeps)

    with pytest.raises(TransportError) as info:
        transport.connect()

    assert info.value.kind == TransportErrorKind.AUTH
    assert info.value.is_fatal is True
    assert sleeps == [1.0, 1.0]


def test_login_succeeds_on_a_later_attempt():
    fake = FakeFTP(bad_logins=2)
    transport = _transport(fake)
    transport.connect()
    assert transport.health_check() is True


def test_missing_host_is_a_config_error():
    config = ConnectionConfig(method="ftp", path="/site", username="user")
    with pytest.raises(TransportError) as info:
        FtpTransport(config, ftp_factory=FakeFTP).connect()
    assert info.value.kind == TransportErrorKind.CONFIG


def test_ensure_directory_twice_is_success():
    fake = FakeFTP()
    transport = _transport(fake)
    transport.connect()

    transport.ensure_directory("a/b/c")
    transport.ensure_directory("a/b/c")

    assert "/public_html/site/a/b/c" in fake.dirs
    assert transport.list_entries("a/b") == ["c"]
    assert transport.list_entries("a/b/c") == []


def test_small_file_upload_uses_a_single_stor(tmp_path):
    source = tmp_path / "small.txt"
    source.write_bytes(b"hello")
    fake = FakeFTP()
    transport = _transport(fake)
    transport.connect()
    transport.ensure_directory("docs")

    assert transport.put_file(str(source), "docs/small.txt") == 5
    assert fake.files["/public_html/site/docs/small.txt"] == b"hello"
    assert [rest for _target, rest, _size in fake.stor_calls] == [None]


def test_large_file_upload_is_chunked_with_rest(tmp_path):
    size = 50 * 1024 * 1024
    source = tmp_path / "large.bin"
    with source.open("wb") as fp:
        fp.truncate(size)
    fake = FakeFTP()
    transport = _transport(fake)
    transport.connect()

    assert transport.put_file(str(source), "large.bin") == size

    stored = fake.files["/public_html/site/large.bin"]
    assert len(stored) == size
    assert len(fake.stor_calls) == size // CHUNK_BYTES
    assert fake.stor_calls[0][1] is None
    assert [rest for _t, rest, _s in fake.stor_calls[1:3]] == [CHUNK_BYTES, 2 * CHUNK_BYTES]


def test_upload_falls_back_to_absolute_path(tmp_path):
    source = tmp_path / "f.txt"
    source.write_bytes(b"data")
    fake = FakeFTP(relative_stor_fails=True)
    transport = _transport(fake)
    transport.connect()

    transport.put_file(str(source), "f.txt")

    assert fake.files["/public_html/site/f.txt"] == b"data"


def test_upload_into_missing_directory_is_an_operation_error(tmp_path):
    source = tmp_path / "f.txt"
    source.write_bytes(b"data")
    fake = FakeFTP()
    transport = _transport(fake)
    transport.connect()

    with pytest.raises(TransportError) as info:
        transport.put_file(str(source), "nope/f.txt")
    assert info.value.kind == TransportErrorKind.OPERATION
    assert info.value.is_fatal is False


def test_write_access_check_and_dropped_connection():
    fake = FakeFTP()
    transport = _transport(fake)
    transport.connect()
    transport.probe_write_access()
    assert fake.files == {}

    fake.connected = False
    assert transport.health_check() is False


def test_upload_creates_an_empty_file_before_writing(tmp_path):
    size = 6 * 1024 * 1024
    source = tmp_path / "big.bin"
    source.write_bytes(b"x" * size)
    fake = FakeFTP(relative_stor_fails=True, new_file_needs_create=True)
    transport = _transport(fake)
    transport.connect()

    assert transport.put_file(str(source), "big.bin") == size

    target = "/public_html/site/big.bin"
    assert fake.stor_calls[0] == (target, None, 0)
    assert len(fake.stor_calls) == 1 + size // CHUNK_BYTES
    assert fake.files[target] == b"x" * size


def test_upload_reports_the_last_refusal_when_every_strategy_fails(tmp_path):
    source = tmp_path / "f.txt"
    source.write_bytes(b"data")
    fake = FakeFTP(relative_stor_fails=True)
    transport = _transport(fake)
    transport.connect()
    fake.dirs.discard("/public_html/site")

    with pytest.raises(TransportError) as info:
        transport.put_file(str(source), "f.txt")

    assert info.value.kind == TransportErrorKind.OPERATION
    assert fake.files == {}


def test_file_engine_restores_a_large_file_over_ftp_in_chunks(tmp_path):
    size = 50 * 1024 * 1024
    extract = tmp_path / "extract"
    (extract / "files").mkdir(parents=True)
    with (extract / "files" / "video.bin").open("wb") as fp:
        fp.truncate(size)
    fake = FakeFTP()
    transport = _transport(fake)
    status = RestoreStatus(
        id="restore-ftp",
        backup_id="backup-1",
        temp_dir=str(tmp_path),
        extract_dir=str(extract),
        backup_file="backup.zip",
        has_db=False,
        has_files=True,
        started=datetime.now(tz=timezone.utc),
        start_time=time.time(),
        phase=RestorePhase.FILES,
    )
    engine = FileRestoreEngine(lambda: transport, monitor=StaticResourceMonitor(), sleep=lambda _s: None)

    for _ in range(5):
        if status.phase != RestorePhase.FILES:
            break
        engine.process(status)

    assert status.phase == RestorePhase.CLEANUP
    assert status.files_processed_size == size
    assert status.actual_files_processed == 1
    assert len(fake.files["/public_html/site/video.bin"]) == size
    assert len(fake.stor_calls) == size // CHUNK_BYTES
