"""Statement splitting for SQL dump files.

The splitter is incremental: text is fed in arbitrary chunks (whole file, lines, or byte
ranges) and complete statements come out as soon as their terminating ``;`` is seen.
Semicolons inside quoted strings or identifiers never terminate a statement. Plain
comments are dropped, MySQL executable comments (``/*! ... */``) are kept.
"""
from __future__ import annotations

import codecs
import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

STREAM_THRESHOLD_BYTES = 10 * 1024 * 1024
READ_CHUNK_BYTES = 1024 * 1024

_QUOTES = {"'", '"', "`"}
_DROP_TABLE_LINE = re.compile(rb"^\s*DROP TABLE IF EXISTS\s+`?([^`\s;]+)`?", re.IGNORECASE)


class SqlStatementSplitter:
    def __init__(self) -> None:
        self._buf: list[str] = []
        self._pending = ""
        self._quote: str | None = None
        self._escape = False
        self._comment: str | None = None

    def feed(self, chunk: str) -> list[str]:
        data = self._pending + chunk
        statements, consumed = self._consume(data, final=False)
        self._pending = data[consumed:]
        return statements

    def finish(self) -> list[str]:
        statements, _ = self._consume(self._pending, final=True)
        self._pending = ""
        tail = "".join(self._buf).strip()
        self._buf = []
        self._quote = None
        self._escape = False
        self._comment = None
        if tail:
            statements.append(tail)
        return statements

    def _consume(self, data: str, *, final: bool) -> tuple[list[str], int]:
        out: list[str] = []
        buf = self._buf
        i = 0
        n = len(data)
        while i < n:
            ch = data[i]

            if self._comment == "line":
                if ch == "\n":
                    self._comment = None
                    buf.append("\n")
                i += 1
                continue

            if self._comment == "block":
                if ch == "*":
                    if i + 1 >= n and not final:
                        break
                    if data[i + 1 : i + 2] == "/":
                        self._comment = None
                        buf.append(" ")
                        i += 2
                        continue
                i += 1
                continue

            if self._quote is not None:
                buf.append(ch)
                if self._escape:
                    self._escape = False
                elif ch == "\\" and self._quote != "`":
                    self._escape = True
                elif ch == self._quote:
                    # a doubled quote reopens on the next char, which keeps '' escapes intact
                    self._quote = None
                i += 1
                continue

            if ch in _QUOTES:
                self._quote = ch
                buf.append(ch)
                i += 1
                continue

            if ch == "-" or ch == "/":
                if i + 2 >= n and not final:
                    break
                nxt = data[i + 1 : i + 2]
                after = data[i + 2 : i + 3]
                if ch == "-" and nxt == "-" and (after == "" or after in " \t\r\n"):
                    self._comment = "line"
                    i += 2
                    continue
                if ch == "/" and nxt == "*" and after != "!":
                    self._comment = "block"
                    i += 2
                    continue

            if ch == "#":
                self._comment = "line"
                i += 1
                continue

            if ch == ";":
                statement = "".join(buf).strip()
                buf.clear()
                if statement:
                    out.append(statement)
                i += 1
                continue

            buf.append(ch)
            i += 1
        return out, i


def split_sql(text: str) -> list[str]:
    splitter = SqlStatementSplitter()
    statements = splitter.feed(text)
    statements.extend(splitter.finish())
    return statements


def _iter_byte_range(path: Path, offset: int, length: int | None) -> Iterator[bytes]:
    remaining = length
    with path.open("rb") as fp:
        fp.seek(offset)
        while remaining is None or remaining > 0:
            size = READ_CHUNK_BYTES if remaining is None else min(READ_CHUNK_BYTES, remaining)
            chunk = fp.read(size)
            if not chunk:
                return
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk


def _iter_lines_in_range(path: Path, offset: int, length: int | None) -> Iterator[bytes]:
    remaining = length
    with path.open("rb") as fp:
        fp.seek(offset)
        for line in fp:
            if remaining is not None:
                if remaining <= 0:
                    return
                if len(line) > remaining:
                    line = line[:remaining]
                remaining -= len(line)
            yield line


def iter_sql_statements(
    path: str | Path,
    *,
    offset: int = 0,
    length: int | None = None,
    stream_threshold: int = STREAM_THRESHOLD_BYTES,
) -> Iterator[str]:
    """Yield statements from ``path`` (optionally a byte range of it).

    Ranges larger than ``stream_threshold`` are read line by line so memory stays bounded.
    """
    source = Path(path)
    span = length if length is not None else max(0, source.stat().st_size - offset)
    splitter = SqlStatementSplitter()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    if span <= stream_threshold:
        raw = b"".join(_iter_byte_range(source, offset, length))
        yield from splitter.feed(decoder.decode(raw, final=True))
    else:
        for line in _iter_lines_in_range(source, offset, length):
            yield from splitter.feed(decoder.decode(line))
        yield from splitter.feed(decoder.decode(b"", final=True))
    yield from splitter.finish()


@dataclass(slots=True)
class DumpSection:
    table: str
    offset: int
    length: int


def index_dump_sections(path: str | Path) -> tuple[int, list[DumpSection]]:
    """Locate per-table sections of a combined dump.

    A section starts at a ``DROP TABLE IF EXISTS`` line and runs until the next one.
    Returns the byte length of the shared preamble and the sections in file order.
    """
    source = Path(path)
    starts: list[tuple[str, int]] = []
    position = 0
    with source.open("rb") as fp:
        for line in fp:
            match = _DROP_TABLE_LINE.match(line)
            if match:
                starts.append((match.group(1).decode("utf-8", errors="replace"), position))
            position += len(line)

    sections: list[DumpSection] = []
    for idx, (table, start) in enumerate(starts):
        end = starts[idx + 1][1] if idx + 1 < len(starts) else position
        sections.append(DumpSection(table=table, offset=start, length=end - start))
    preamble_length = starts[0][1] if starts else 0
    return preamble_length, sections
