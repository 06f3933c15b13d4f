"""gtfs_etl.loader_config

Batch sizes, pauses and store limits for import and deletion runs, loaded
from a YAML file (config/gtfs_loader.yml by default).

Usage:
    from pathlib import Path
    from gtfs_etl.loader_config import load_loader_config

    config = load_loader_config(Path("config/gtfs_loader.yml"))
    config.delete_batch_size  # 150
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = Path("config/gtfs_loader.yml")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LoaderConfigError(ValueError):
    """Raised when the loader YAML fails validation."""


# ---------------------------------------------------------------------------
# LoaderConfig dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoaderConfig:
    import_batch_size: int = 1000
    import_batch_delay_seconds: float = 0.1
    delete_batch_size: int = 150
    delete_min_batch_size: int = 2
    delete_batch_delay_seconds: float = 0.2
    delete_table_delay_seconds: float = 0.5
    final_retry_delay_seconds: float = 1.0
    max_backoff_multiplier: float = 8.0
    statement_timeout_ms: int = 600_000
    max_rows_per_call: int = 1000


_INT_KEYS = frozenset({
    "import_batch_size",
    "delete_batch_size",
    "delete_min_batch_size",
    "statement_timeout_ms",
    "max_rows_per_call",
})


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_loader_config(yaml_path: Path | None = None) -> LoaderConfig:
    """Load and validate loader settings.

    A missing file yields the defaults; keys absent from the file keep
    their defaults.

    Raises:
        LoaderConfigError: unknown key, wrong type, or out-of-range value.
    """
    path = yaml_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        return LoaderConfig()
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise LoaderConfigError(f"{path}: top level must be a mapping")
    return build_loader_config(data)


def build_loader_config(data: dict[str, Any]) -> LoaderConfig:
    validate_loader_config(data)
    values: dict[str, Any] = {}
    for key, value in data.items():
        values[key] = int(value) if key in _INT_KEYS else float(value)
    return LoaderConfig(**values)


def validate_loader_config(data: dict[str, Any]) -> None:
    """Raise LoaderConfigError if ``data`` does not match the LoaderConfig schema.

    Validates:
      - every key is a known setting
      - counts are positive integers, delays non-negative numbers
      - delete_min_batch_size <= delete_batch_size
      - import_batch_size <= max_rows_per_call
      - max_backoff_multiplier >= 1
    """
    known = {f.name for f in fields(LoaderConfig)}
    unknown = set(data) - known
    if unknown:
        raise LoaderConfigError(f"Unknown config keys: {sorted(unknown)}")

    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise LoaderConfigError(f"{key} must be a number, got {value!r}")
        if key in _INT_KEYS:
            if int(value) != value or value < 1:
                raise LoaderConfigError(f"{key} must be a positive integer, got {value!r}")
        elif value < 0:
            raise LoaderConfigError(f"{key} must be >= 0, got {value!r}")

    defaults = LoaderConfig()
    batch = data.get("delete_batch_size", defaults.delete_batch_size)
    floor = data.get("delete_min_batch_size", defaults.delete_min_batch_size)
    if floor > batch:
        raise LoaderConfigError(
            f"delete_min_batch_size ({floor}) must not exceed delete_batch_size ({batch})"
        )
    import_batch = data.get("import_batch_size", defaults.import_batch_size)
    row_cap = data.get("max_rows_per_call", defaults.max_rows_per_call)
    if import_batch > row_cap:
        raise LoaderConfigError(
            f"import_batch_size ({import_batch}) must not exceed max_rows_per_call ({row_cap})"
        )
    if data.get("max_backoff_multiplier", defaults.max_backoff_multiplier) < 1:
        raise LoaderConfigError("max_backoff_multiplier must be >= 1")
