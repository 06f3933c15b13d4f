"""gtfs_etl.feed_reader

Turns raw GTFS feed files into header-keyed records, and gathers feed files
from a directory, a zip archive or a download URL.

Contract of read_feed_file():
  - first row is the header (names trimmed, BOM stripped);
  - every later row is one record, yielded lazily and in file order;
  - blank lines (and rows whose cells are all blank) are skipped;
  - a CSV syntax error or a row whose field count differs from the header
    raises FeedParseError and the whole file fails;
  - bytes that are not valid UTF-8 raise FeedParseError at line 0.
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator

import requests

from gtfs_etl.gtfs_schema import table_for_file
from gtfs_etl.shared import normalize_headers

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FeedParseError(ValueError):
    """Raised when a feed file is not well-formed delimited text."""

    def __init__(self, file_name: str, line: int, reason: str) -> None:
        super().__init__(f"{file_name}: line {line}: {reason}")
        self.file_name = file_name
        self.line = line
        self.reason = reason


class FeedDownloadError(RuntimeError):
    """Raised when a remote feed cannot be fetched."""


# ---------------------------------------------------------------------------
# FeedFile
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeedFile:
    """One GTFS file: its name, target table and raw text."""

    name: str
    table: str
    text: str

    @classmethod
    def from_bytes(cls, name: str, data: bytes) -> "FeedFile | None":
        table = table_for_file(name)
        if table is None:
            return None
        base = Path(name).name
        return cls(name=base, table=table, text=_decode(data, base))


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

def _decode(data: bytes, file_name: str) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise FeedParseError(file_name, 0, f"not valid UTF-8: {exc}") from exc


def _is_blank(row: list[str]) -> bool:
    return all(not cell.strip() for cell in row)


def _iter_records(fh: IO[str], file_name: str) -> Iterator[dict[str, str]]:
    reader = csv.reader(fh, strict=True)
    try:
        header: list[str] | None = None
        for row in reader:
            if not row or _is_blank(row):
                continue
            if header is None:
                header = normalize_headers(row)
                if len(set(header)) != len(header):
                    raise FeedParseError(file_name, reader.line_num, "duplicate column names in header")
                continue
            if len(row) != len(header):
                raise FeedParseError(
                    file_name,
                    reader.line_num,
                    f"expected {len(header)} fields, got {len(row)}",
                )
            yield dict(zip(header, row))
    except csv.Error as exc:
        raise FeedParseError(file_name, reader.line_num, str(exc)) from exc


def read_feed_file(
    source: str | bytes | Path | IO[str],
    table: str,
    file_name: str | None = None,
) -> Iterator[dict[str, str]]:
    """Yield header-keyed records from one feed file.

    ``source`` may be the file's text, its bytes, a path, or an open text
    stream. ``table`` is the declared target table and only used to label
    errors when ``file_name`` is not given.
    """
    label = file_name or f"{table}.txt"
    if isinstance(source, Path):
        source = source.read_bytes()
    if isinstance(source, bytes):
        source = _decode(source, label)
    if isinstance(source, str):
        yield from _iter_records(io.StringIO(source.lstrip("\ufeff"), newline=""), label)
        return
    yield from _iter_records(source, label)


# ---------------------------------------------------------------------------
# Feed acquisition
# ---------------------------------------------------------------------------

def load_feed_directory(directory: Path) -> list[FeedFile]:
    """Collect the recognised GTFS files from a directory (non-recursive)."""
    files: list[FeedFile] = []
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        feed_file = FeedFile.from_bytes(path.name, path.read_bytes())
        if feed_file is None:
            log.info("Ignoring unrecognised feed file %s", path.name)
            continue
        files.append(feed_file)
    return files


def load_feed_zip(archive: Path | bytes) -> list[FeedFile]:
    """Collect the recognised GTFS files from a zip archive.

    Members may sit in a sub-folder; when the same file name appears twice,
    the shallowest member wins.
    """
    buffer = io.BytesIO(archive) if isinstance(archive, bytes) else archive
    by_name: dict[str, tuple[int, FeedFile]] = {}
    try:
        with zipfile.ZipFile(buffer) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                feed_file = FeedFile.from_bytes(info.filename, zf.read(info))
                if feed_file is None:
                    continue
                depth = info.filename.count("/")
                current = by_name.get(feed_file.name)
                if current is None or depth < current[0]:
                    by_name[feed_file.name] = (depth, feed_file)
    except zipfile.BadZipFile as exc:
        raise FeedParseError(str(archive) if isinstance(archive, Path) else "<zip>", 0,
                             f"not a zip archive: {exc}") from exc
    return [ff for _, ff in (by_name[name] for name in sorted(by_name))]


def load_feed(path: Path) -> list[FeedFile]:
    """Load a feed from a directory, a .zip archive, or a single .txt file."""
    if path.is_dir():
        return load_feed_directory(path)
    if path.suffix.lower() == ".zip":
        return load_feed_zip(path)
    feed_file = FeedFile.from_bytes(path.name, path.read_bytes())
    return [feed_file] if feed_file else []


def download_feed(
    url: str,
    session: requests.Session | None = None,
    timeout: int = 60,
) -> list[FeedFile]:
    """Fetch a zipped GTFS feed over HTTP and return its files."""
    http = session or requests.Session()
    try:
        resp = http.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise FeedDownloadError(f"failed to download {url}: {exc}") from exc
    if resp.status_code >= 400:
        raise FeedDownloadError(
            f"failed to download {url}: HTTP {resp.status_code}"
        )
    log.info("Downloaded feed %s (%d bytes)", url, len(resp.content))
    return load_feed_zip(resp.content)
