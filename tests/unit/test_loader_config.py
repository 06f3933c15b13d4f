"""Unit tests for gtfs_etl.loader_config."""

from __future__ import annotations

from pathlib import Path

import pytest

from gtfs_etl.loader_config import (
    LoaderConfig,
    LoaderConfigError,
    build_loader_config,
    load_loader_config,
    validate_loader_config,
)

REPO_CONFIG = Path(__file__).resolve().parents[2] / "config" / "gtfs_loader.yml"


class TestLoadLoaderConfig:
    def test_repo_config_matches_defaults(self):
        assert load_loader_config(REPO_CONFIG) == LoaderConfig()

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_loader_config(tmp_path / "nope.yml") == LoaderConfig()

    def test_partial_file_keeps_other_defaults(self, tmp_path):
        path = tmp_path / "loader.yml"
        path.write_text("delete_batch_size: 50\nimport_batch_delay_seconds: 0\n")
        config = load_loader_config(path)
        assert config.delete_batch_size == 50
        assert config.import_batch_delay_seconds == 0.0
        assert config.import_batch_size == 1000

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "loader.yml"
        path.write_text("")
        assert load_loader_config(path) == LoaderConfig()

    def test_top_level_list_rejected(self, tmp_path):
        path = tmp_path / "loader.yml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(LoaderConfigError, match="mapping"):
            load_loader_config(path)


class TestValidateLoaderConfig:
    def test_unknown_key(self):
        with pytest.raises(LoaderConfigError, match="Unknown config keys"):
            validate_loader_config({"delete_batch": 10})

    @pytest.mark.parametrize("data", [
        {"delete_batch_size": "150"},
        {"import_batch_size": True},
        {"import_batch_size": 0},
        {"delete_batch_size": 1.5},
        {"delete_batch_delay_seconds": -0.1},
    ])
    def test_bad_values(self, data):
        with pytest.raises(LoaderConfigError):
            validate_loader_config(data)

    def test_floor_above_batch(self):
        with pytest.raises(LoaderConfigError, match="must not exceed"):
            validate_loader_config({"delete_batch_size": 4, "delete_min_batch_size": 8})

    def test_import_batch_above_row_cap(self):
        with pytest.raises(LoaderConfigError, match="max_rows_per_call"):
            validate_loader_config({"import_batch_size": 500, "max_rows_per_call": 200})

    def test_row_cap_below_default_import_batch(self, tmp_path):
        path = tmp_path / "loader.yml"
        path.write_text("max_rows_per_call: 100\n")
        with pytest.raises(LoaderConfigError, match="import_batch_size"):
            load_loader_config(path)

    def test_import_batch_equal_to_row_cap(self):
        validate_loader_config({"import_batch_size": 200, "max_rows_per_call": 200})

    def test_backoff_below_one(self):
        with pytest.raises(LoaderConfigError, match="max_backoff_multiplier"):
            validate_loader_config({"max_backoff_multiplier": 0.5})

    def test_ints_coerced(self):
        config = build_loader_config({"delete_batch_size": 64.0, "max_backoff_multiplier": 4})
        assert config.delete_batch_size == 64
        assert isinstance(config.delete_batch_size, int)
        assert config.max_backoff_multiplier == 4.0
