"""gtfs_etl.shared

Run plumbing shared by the import and deletion pipelines: tenant
configuration, run counters, the resumable-run checkpoint, batch pacing,
cancellation, header normalization and report writing.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tenant configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TenantConfig:
    """Who the rows belong to, plus the optional sub-source being merged."""

    tenant_id: str
    tenant_name: str | None = None
    sub_source_name: str | None = None
    realtime_type: str | None = None
    realtime_url: str | None = None
    realtime_api_key: str | None = None

    def __post_init__(self) -> None:
        if not self.tenant_id or not self.tenant_id.strip():
            raise ValueError("tenant_id is required")

    @property
    def has_sub_source(self) -> bool:
        return bool(self.sub_source_name and self.sub_source_name.strip())


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class RunCancelled(Exception):
    """Raised between batches once the caller has cancelled the run."""


class CancellationToken:
    """Thread-safe flag a caller flips to stop a run between batches."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled("run cancelled by caller")


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    files_read: int = 0
    files_skipped_checkpoint: int = 0
    rows_read: int = 0
    rows_upserted: int = 0
    duplicate_keys_collapsed: int = 0
    validation_gaps: int = 0
    batches_upserted: int = 0
    batch_retries: int = 0
    agency_ids_remapped: int = 0
    agency_prefix_matches: int = 0
    forced_agency_fallbacks: int = 0
    route_ids_suffixed: int = 0
    trip_routes_remapped: int = 0
    sub_source_columns_stripped: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class DeletionCounters:
    rows_deleted: int = 0
    batches_deleted: int = 0
    capacity_errors: int = 0
    tables_cleared: int = 0
    tables_blocked: int = 0
    tables_failed: int = 0
    fallback_deletes: int = 0
    favorites_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Batch pacer
# ---------------------------------------------------------------------------

@dataclass
class BatchPacer:
    """Fixed pause between store calls, stretched exponentially after failures."""

    base_delay: float = 0.2
    max_backoff_mult: float = 8.0
    _backoff_mult: float = field(default=1.0, init=False, repr=False)

    def sleep(self, delay: float | None = None) -> None:
        """Block for (delay or base_delay) * backoff_mult seconds."""
        seconds = (self.base_delay if delay is None else delay) * self._backoff_mult
        if seconds > 0:
            time.sleep(seconds)

    def on_success(self) -> None:
        self._backoff_mult = 1.0

    def on_failure(self) -> None:
        self._backoff_mult = min(self._backoff_mult * 2.0, self.max_backoff_mult)

    @property
    def backoff_mult(self) -> float:
        return self._backoff_mult


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------

class Checkpoint:
    """Persist the feed files already committed for a tenant so imports can resume."""

    def __init__(self, path: Path, tenant_id: str) -> None:
        self._path = path
        self._tenant_id = tenant_id
        self._completed: set[str] = set()

    def load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("Checkpoint load failed (%s); starting fresh.", exc)
            return
        if data.get("tenant_id") != self._tenant_id:
            log.warning(
                "Checkpoint %s belongs to tenant %r, not %r; ignoring it.",
                self._path, data.get("tenant_id"), self._tenant_id,
            )
            return
        self._completed = set(data.get("completed_files", []))

    def is_done(self, file_name: str) -> bool:
        return file_name in self._completed

    def mark_done(self, file_name: str) -> None:
        self._completed.add(file_name)
        self._save()

    @property
    def completed(self) -> frozenset[str]:
        return frozenset(self._completed)

    def clear(self) -> None:
        self._completed.clear()
        if self._path.exists():
            self._path.unlink()

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(
            json.dumps(
                {"tenant_id": self._tenant_id, "completed_files": sorted(self._completed)},
                indent=2,
            ),
            encoding="utf-8",
        )

    def __len__(self) -> int:
        return len(self._completed)


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: list[str]) -> list[str]:
    """Return header names with whitespace and any UTF-8 BOM stripped."""
    return [h.replace("\ufeff", "").strip() for h in raw]


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    payload: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **payload,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
