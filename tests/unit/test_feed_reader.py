"""Unit tests for gtfs_etl.feed_reader.

No network access: download_feed is exercised with a mocked requests session.
"""

from __future__ import annotations

import io
import zipfile
from unittest.mock import MagicMock

import pytest
import requests

from gtfs_etl.feed_reader import (
    FeedDownloadError,
    FeedParseError,
    download_feed,
    load_feed,
    load_feed_directory,
    load_feed_zip,
    read_feed_file,
)

STOPS = "stop_id,stop_name,stop_lat,stop_lon\nS1,Gare,48.85,2.35\nS2,Mairie,48.86,2.36\n"


def _zip_bytes(members: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in members.items():
            zf.writestr(name, text)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# read_feed_file
# ---------------------------------------------------------------------------

class TestReadFeedFile:
    def test_records_keyed_by_header_in_order(self):
        rows = list(read_feed_file(STOPS, "stops"))
        assert [r["stop_id"] for r in rows] == ["S1", "S2"]
        assert rows[0] == {"stop_id": "S1", "stop_name": "Gare", "stop_lat": "48.85", "stop_lon": "2.35"}

    def test_is_lazy(self):
        records = read_feed_file("stop_id\nS1\nS2,extra\n", "stops")
        assert next(records) == {"stop_id": "S1"}
        with pytest.raises(FeedParseError):
            next(records)

    def test_bom_and_header_whitespace_stripped(self):
        text = "\ufeff stop_id , stop_name \nS1,Gare\n"
        rows = list(read_feed_file(text, "stops"))
        assert rows == [{"stop_id": "S1", "stop_name": "Gare"}]

    def test_bytes_with_bom(self):
        rows = list(read_feed_file(STOPS.encode("utf-8-sig"), "stops"))
        assert len(rows) == 2
        assert "stop_id" in rows[0]

    def test_blank_lines_skipped(self):
        text = "stop_id,stop_name\n\nS1,Gare\n\n,\nS2,Mairie\n"
        assert [r["stop_id"] for r in read_feed_file(text, "stops")] == ["S1", "S2"]

    def test_quoted_fields_with_commas(self):
        text = 'stop_id,stop_name\nS1,"Gare, Nord"\n'
        assert list(read_feed_file(text, "stops"))[0]["stop_name"] == "Gare, Nord"

    def test_header_only_yields_nothing(self):
        assert list(read_feed_file("stop_id,stop_name\n", "stops")) == []

    def test_empty_file_yields_nothing(self):
        assert list(read_feed_file("", "stops")) == []

    def test_field_count_mismatch_raises_with_line(self):
        text = "stop_id,stop_name\nS1,Gare\nS2\n"
        with pytest.raises(FeedParseError) as exc_info:
            list(read_feed_file(text, "stops"))
        assert exc_info.value.file_name == "stops.txt"
        assert exc_info.value.line == 3
        assert "expected 2 fields, got 1" in str(exc_info.value)

    def test_explicit_file_name_in_error(self):
        with pytest.raises(FeedParseError, match="my_stops.txt"):
            list(read_feed_file("a,b\n1,2,3\n", "stops", file_name="my_stops.txt"))

    def test_unterminated_quote_raises(self):
        text = 'stop_id,stop_name\nS1,"Gare\n'
        with pytest.raises(FeedParseError):
            list(read_feed_file(text, "stops"))

    def test_duplicate_header_raises(self):
        with pytest.raises(FeedParseError, match="duplicate"):
            list(read_feed_file("stop_id,stop_id\nS1,S2\n", "stops"))

    def test_reads_from_path(self, tmp_path):
        path = tmp_path / "stops.txt"
        path.write_text(STOPS, encoding="utf-8")
        assert len(list(read_feed_file(path, "stops"))) == 2

    def test_latin1_bytes_raise_parse_error(self):
        data = "stop_id,stop_name\nS1,Café\n".encode("latin-1")
        with pytest.raises(FeedParseError, match="not valid UTF-8") as exc_info:
            list(read_feed_file(data, "stops"))
        assert exc_info.value.file_name == "stops.txt"
        assert exc_info.value.line == 0

    def test_latin1_path_raises_parse_error(self, tmp_path):
        path = tmp_path / "stops.txt"
        path.write_bytes("stop_id,stop_name\nS1,Gare de l'Est\nS2,Café\n".encode("latin-1"))
        with pytest.raises(FeedParseError, match="not valid UTF-8"):
            list(read_feed_file(path, "stops"))


# ---------------------------------------------------------------------------
# Feed acquisition
# ---------------------------------------------------------------------------

class TestLoadFeed:
    def test_directory_keeps_known_files_only(self, tmp_path):
        (tmp_path / "stops.txt").write_text(STOPS)
        (tmp_path / "agency.txt").write_text("agency_id\nA1\n")
        (tmp_path / "feed_info.txt").write_text("feed_publisher_name\nX\n")
        files = load_feed_directory(tmp_path)
        assert sorted(f.table for f in files) == ["agency", "stops"]

    def test_zip_with_subfolder(self):
        data = _zip_bytes({"gtfs/stops.txt": STOPS, "gtfs/readme.md": "hi"})
        files = load_feed_zip(data)
        assert len(files) == 1
        assert files[0].name == "stops.txt"
        assert files[0].table == "stops"
        assert "S1" in files[0].text

    def test_zip_prefers_shallowest_member(self):
        data = _zip_bytes({"old/stops.txt": "stop_id\nOLD\n", "stops.txt": "stop_id\nNEW\n"})
        files = load_feed_zip(data)
        assert [f.text for f in files] == ["stop_id\nNEW\n"]

    def test_bad_zip_raises(self):
        with pytest.raises(FeedParseError, match="not a zip"):
            load_feed_zip(b"definitely not a zip")

    def test_load_feed_dispatches_on_zip(self, tmp_path):
        path = tmp_path / "feed.zip"
        path.write_bytes(_zip_bytes({"stops.txt": STOPS}))
        assert [f.table for f in load_feed(path)] == ["stops"]

    def test_load_feed_single_file(self, tmp_path):
        path = tmp_path / "stops.txt"
        path.write_text(STOPS)
        assert [f.table for f in load_feed(path)] == ["stops"]

    def test_latin1_file_in_directory_raises_parse_error(self, tmp_path):
        (tmp_path / "agency.txt").write_text("agency_id\nA1\n")
        (tmp_path / "stops.txt").write_bytes("stop_id,stop_name\nS1,Hôtel de Ville\n".encode("latin-1"))
        with pytest.raises(FeedParseError) as exc_info:
            load_feed_directory(tmp_path)
        assert exc_info.value.file_name == "stops.txt"


class TestDownloadFeed:
    def test_success(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200, content=_zip_bytes({"stops.txt": STOPS}))
        files = download_feed("https://example.org/gtfs.zip", session=session, timeout=5)
        session.get.assert_called_once_with("https://example.org/gtfs.zip", timeout=5)
        assert [f.table for f in files] == ["stops"]

    def test_http_error_raises(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=404, content=b"")
        with pytest.raises(FeedDownloadError, match="HTTP 404"):
            download_feed("https://example.org/missing.zip", session=session)

    def test_network_error_raises(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(FeedDownloadError, match="refused"):
            download_feed("https://example.org/gtfs.zip", session=session)
