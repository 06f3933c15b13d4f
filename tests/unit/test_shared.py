"""Unit tests for gtfs_etl.shared."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from gtfs_etl.shared import (
    BatchPacer,
    CancellationToken,
    Checkpoint,
    ImportCounters,
    RunCancelled,
    TenantConfig,
    normalize_headers,
    write_run_report,
)


# ---------------------------------------------------------------------------
# TenantConfig / CancellationToken
# ---------------------------------------------------------------------------

class TestTenantConfig:
    def test_blank_id_rejected(self):
        with pytest.raises(ValueError):
            TenantConfig(tenant_id="  ")

    def test_blank_sub_source_is_none(self):
        assert not TenantConfig(tenant_id="demo", sub_source_name=" ").has_sub_source


class TestCancellationToken:
    def test_raises_once_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(RunCancelled):
            token.raise_if_cancelled()


# ---------------------------------------------------------------------------
# BatchPacer
# ---------------------------------------------------------------------------

class TestBatchPacer:
    def test_sleeps_base_delay(self):
        pacer = BatchPacer(base_delay=0.2)
        with patch("gtfs_etl.shared.time.sleep") as sleep:
            pacer.sleep()
        sleep.assert_called_once_with(0.2)

    def test_backoff_doubles_and_caps(self):
        pacer = BatchPacer(base_delay=0.1, max_backoff_mult=4.0)
        for _ in range(5):
            pacer.on_failure()
        assert pacer.backoff_mult == 4.0
        with patch("gtfs_etl.shared.time.sleep") as sleep:
            pacer.sleep(0.5)
        sleep.assert_called_once_with(2.0)

    def test_success_resets(self):
        pacer = BatchPacer()
        pacer.on_failure()
        pacer.on_success()
        assert pacer.backoff_mult == 1.0

    def test_zero_delay_never_sleeps(self):
        with patch("gtfs_etl.shared.time.sleep") as sleep:
            BatchPacer(base_delay=0.0).sleep()
        sleep.assert_not_called()


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------

class TestCheckpoint:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "ckpt" / "gtfs_demo.json"
        cp = Checkpoint(path, "demo")
        cp.mark_done("agency.txt")
        cp.mark_done("stops.txt")

        reloaded = Checkpoint(path, "demo")
        reloaded.load()
        assert reloaded.is_done("agency.txt")
        assert len(reloaded) == 2

    def test_other_tenant_ignored(self, tmp_path):
        path = tmp_path / "gtfs.json"
        Checkpoint(path, "demo").mark_done("agency.txt")
        other = Checkpoint(path, "other")
        other.load()
        assert len(other) == 0

    def test_corrupt_file_starts_fresh(self, tmp_path):
        path = tmp_path / "gtfs.json"
        path.write_text("{not json")
        cp = Checkpoint(path, "demo")
        cp.load()
        assert len(cp) == 0

    def test_clear_removes_file(self, tmp_path):
        path = tmp_path / "gtfs.json"
        cp = Checkpoint(path, "demo")
        cp.mark_done("agency.txt")
        cp.clear()
        assert not path.exists()
        assert cp.completed == frozenset()


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------

class TestNormalizeHeaders:
    def test_strips_bom_and_whitespace(self):
        assert normalize_headers(["\ufeffstop_id", " stop_name "]) == ["stop_id", "stop_name"]


class TestCounters:
    def test_warnings_truncated(self):
        counters = ImportCounters(rows_read=3)
        counters.warnings.extend(f"w{i}" for i in range(60))
        d = counters.to_dict()
        assert d["rows_read"] == 3
        assert len(d["warnings"]) == 50


class TestWriteRunReport:
    def test_writes_json(self, tmp_path):
        path = write_run_report("run1", "2024-01-01T00:00:00", "import",
                                {"counters": {"rows_read": 2}}, report_dir=tmp_path)
        assert path == tmp_path / "run1.json"
        data = json.loads(path.read_text())
        assert data["run_id"] == "run1"
        assert data["mode"] == "import"
        assert data["counters"] == {"rows_read": 2}
        assert "finished_at" in data
