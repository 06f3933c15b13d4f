"""gtfs_etl.importer

Dependency-ordered GTFS import into a tenant.

Per file: read -> sanitize -> resolve identifiers -> de-duplicate by natural
key -> upsert in batches. Files run in IMPORT_ORDER so every parent table is
written before its children. Each batch commits on its own; a run that stops
part-way can be resumed at file granularity (completed files are skipped,
a file that failed part-way re-runs in full).

Upsert failure ladder per batch:
  (a) store rejects subnetwork_name / subnetwork_metadata
        -> drop both columns for the rest of the session and retry
  (b) routes rejected by the agency foreign key
        -> substitute the tenant's first agency and retry once;
           no agency at all is fatal (ReferentialConflictError)
  (c) anything else is fatal and aborts the import
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Sequence

from gtfs_etl.conflicts import (
    ConflictEvent,
    ForcedAgencyFallback,
    record_event,
    remap_agency_rows,
    remap_trip_route_ids,
    resolve_route_rows,
)
from gtfs_etl.feed_reader import FeedFile, FeedParseError, read_feed_file
from gtfs_etl.gateway import ForeignKeyViolation, StoreError, StoreGateway, UnknownColumnError
from gtfs_etl.gtfs_schema import (
    AGENCY_FOREIGN_KEY,
    CONFLICT_COLUMNS,
    IMPORT_ORDER,
    SUB_SOURCE_COLUMNS,
    TENANT_COLUMN,
)
from gtfs_etl.loader_config import LoaderConfig
from gtfs_etl.sanitize import sanitize_rows
from gtfs_etl.shared import (
    BatchPacer,
    CancellationToken,
    Checkpoint,
    ImportCounters,
    RunCancelled,
    TenantConfig,
)

log = logging.getLogger(__name__)

UPLOAD_MODES = ("full", "incremental")

ProgressCallback = Callable[[float, "str | None"], None]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MissingAgencyError(Exception):
    """Incremental import without agency.txt for a tenant that has no agency."""


class ReferentialConflictError(Exception):
    """Rows reference an agency and the tenant has none to fall back to."""


# ---------------------------------------------------------------------------
# Session / results
# ---------------------------------------------------------------------------

@dataclass
class ImportSession:
    """State of one import run; discarded when the run ends."""

    tenant: TenantConfig
    mode: str = "full"
    agency_id_mapping: dict[str, str] = field(default_factory=dict)
    route_id_mapping: dict[str, str] = field(default_factory=dict)
    completed_files: set[str] = field(default_factory=set)
    counters: ImportCounters = field(default_factory=ImportCounters)
    events: list[ConflictEvent] = field(default_factory=list)
    cancellation: CancellationToken | None = None
    on_progress: ProgressCallback | None = None
    sub_source_columns_supported: bool = True

    def __post_init__(self) -> None:
        if self.mode not in UPLOAD_MODES:
            raise ValueError(f"mode must be one of {UPLOAD_MODES}, got {self.mode!r}")

    def check_cancelled(self) -> None:
        if self.cancellation is not None:
            self.cancellation.raise_if_cancelled()


@dataclass
class FileResult:
    name: str
    table: str
    status: str = "pending"  # pending | imported | skipped | failed
    rows_read: int = 0
    rows_upserted: int = 0
    error: str | None = None


@dataclass
class ImportReport:
    tenant_id: str
    success: bool
    error: str | None
    files: list[FileResult]
    progress: float
    counters: ImportCounters
    events: list[ConflictEvent]
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "success": self.success,
            "error": self.error,
            "cancelled": self.cancelled,
            "progress": round(self.progress, 4),
            "files": [vars(f) for f in self.files],
            "counters": self.counters.to_dict(),
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def order_feed_files(files: Iterable[FeedFile]) -> list[FeedFile]:
    """Sort files into IMPORT_ORDER; anything else keeps its order at the end."""
    files = list(files)
    known = [f for t in IMPORT_ORDER for f in files if f.table == t]
    return known + [f for f in files if f.table not in IMPORT_ORDER]


def _chunks(rows: Iterable[dict[str, Any]], size: int) -> Iterator[list[dict[str, Any]]]:
    batch: list[dict[str, Any]] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def dedupe_rows(
    rows: Sequence[dict[str, Any]],
    key_columns: Sequence[str],
) -> tuple[list[dict[str, Any]], int]:
    """Collapse rows sharing a natural key; the last occurrence wins.

    Returns (rows, number collapsed). A single upsert statement cannot touch
    the same key twice.
    """
    by_key: dict[tuple[Any, ...], dict[str, Any]] = {}
    for row in rows:
        by_key[tuple(row.get(c) for c in key_columns)] = row
    return list(by_key.values()), len(rows) - len(by_key)


def _names_sub_source_column(exc: StoreError) -> bool:
    if isinstance(exc, UnknownColumnError) and exc.column in SUB_SOURCE_COLUMNS:
        return True
    text = str(exc)
    return any(col in text for col in SUB_SOURCE_COLUMNS)


def _is_agency_reference(exc: ForeignKeyViolation) -> bool:
    return exc.constraint_name == AGENCY_FOREIGN_KEY or AGENCY_FOREIGN_KEY in str(exc)


def _strip_sub_source(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{k: v for k, v in r.items() if k not in SUB_SOURCE_COLUMNS} for r in rows]


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------

class FeedImporter:
    def __init__(
        self,
        gateway: StoreGateway,
        session: ImportSession,
        config: LoaderConfig | None = None,
        checkpoint: Checkpoint | None = None,
        pacer: BatchPacer | None = None,
    ) -> None:
        self.gateway = gateway
        self.session = session
        self.config = config or LoaderConfig()
        self.checkpoint = checkpoint
        self.pacer = pacer or BatchPacer(
            base_delay=self.config.import_batch_delay_seconds,
            max_backoff_mult=self.config.max_backoff_multiplier,
        )

    @property
    def _scope(self) -> dict[str, Any]:
        return {TENANT_COLUMN: self.session.tenant.tenant_id}

    # -- run ---------------------------------------------------------------

    def run(self, files: Iterable[FeedFile]) -> ImportReport:
        session = self.session
        ordered = order_feed_files(files)
        results: list[FileResult] = []
        error: str | None = None
        cancelled = False
        done = 0

        try:
            self._check_agency_guard(ordered)
            for feed_file in ordered:
                session.check_cancelled()
                result = FileResult(feed_file.name, feed_file.table)
                results.append(result)
                if self._already_done(feed_file.name):
                    result.status = "skipped"
                    session.counters.files_skipped_checkpoint += 1
                    log.info("Skipping %s (already imported)", feed_file.name)
                else:
                    self._import_file(feed_file, result)
                    session.completed_files.add(feed_file.name)
                    if self.checkpoint is not None:
                        self.checkpoint.mark_done(feed_file.name)
                done += 1
                self._report_progress(done, len(ordered), feed_file.name)
        except RunCancelled:
            cancelled = True
            log.warning("Import for tenant %s cancelled after %d/%d files",
                        session.tenant.tenant_id, done, len(ordered))
        except (FeedParseError, StoreError, MissingAgencyError, ReferentialConflictError) as exc:
            error = str(exc)
            log.error("Import for tenant %s failed: %s", session.tenant.tenant_id, exc)

        progress = done / len(ordered) if ordered else 1.0
        return ImportReport(
            tenant_id=session.tenant.tenant_id,
            success=error is None and not cancelled,
            error=error,
            files=results,
            progress=progress,
            counters=session.counters,
            events=list(session.events),
            cancelled=cancelled,
        )

    def _already_done(self, name: str) -> bool:
        if name in self.session.completed_files:
            return True
        return self.checkpoint is not None and self.checkpoint.is_done(name)

    def _report_progress(self, done: int, total: int, current: str | None) -> None:
        if self.session.on_progress is not None:
            self.session.on_progress(done / total if total else 1.0, current)

    def _check_agency_guard(self, ordered: list[FeedFile]) -> None:
        if self.session.mode != "incremental":
            return
        if any(f.table == "agency" for f in ordered):
            return
        if self.gateway.count_where("agency", self._scope) == 0:
            raise MissingAgencyError(
                f"tenant {self.session.tenant.tenant_id!r} has no agency; "
                "an incremental import without agency.txt cannot proceed"
            )

    # -- per file ------------------------------------------------------------

    def _import_file(self, feed_file: FeedFile, result: FileResult) -> None:
        session = self.session
        table = feed_file.table
        log.info("Importing %s into %s", feed_file.name, table)
        session.counters.files_read += 1
        rows_before = session.counters.rows_read
        try:
            records = read_feed_file(feed_file.text, table, feed_file.name)
            rows = sanitize_rows(records, table, session.tenant, session.counters)
            resolve = self._resolver(table)
            for i, batch in enumerate(_chunks(rows, self.config.import_batch_size)):
                session.check_cancelled()
                if i:
                    self.pacer.sleep()
                batch = resolve(batch)
                batch, collapsed = dedupe_rows(batch, CONFLICT_COLUMNS[table])
                session.counters.duplicate_keys_collapsed += collapsed
                self._upsert_batch(table, batch)
                result.rows_upserted += len(batch)
        except Exception as exc:
            result.status = "failed"
            result.error = str(exc)
            raise
        finally:
            result.rows_read = session.counters.rows_read - rows_before
        result.status = "imported"
        log.info("Imported %s: %d rows read, %d upserted",
                 feed_file.name, result.rows_read, result.rows_upserted)

    def _resolver(self, table: str) -> Callable[[list[dict[str, Any]]], list[dict[str, Any]]]:
        session = self.session
        if table == "agency":
            existing = self._existing("agency", "agency_id")
            return lambda batch: remap_agency_rows(batch, session, existing)
        if table == "routes":
            agency_ids = list(self._existing("agency", "agency_id"))
            existing_routes = self._existing("routes", "route_id")
            return lambda batch: resolve_route_rows(batch, session, agency_ids, existing_routes)
        if table == "trips":
            return lambda batch: remap_trip_route_ids(batch, session)
        return lambda batch: batch

    def _existing(self, table: str, id_column: str) -> dict[str, str | None]:
        """The tenant's ids in ``table`` mapped to the sub-source that wrote them."""
        if self.session.sub_source_columns_supported:
            try:
                rows = self.gateway.select_rows(table, [id_column, "subnetwork_name"], self._scope)
                return {r[id_column]: r.get("subnetwork_name") for r in rows}
            except UnknownColumnError as exc:
                if not _names_sub_source_column(exc):
                    raise
                self._disable_sub_source_columns(table, exc)
        rows = self.gateway.select_rows(table, [id_column], self._scope)
        return {r[id_column]: None for r in rows}

    def _disable_sub_source_columns(self, table: str, exc: StoreError) -> None:
        self.session.sub_source_columns_supported = False
        self.session.counters.sub_source_columns_stripped += 1
        log.warning("Store has no sub-source columns (%s: %s); continuing without them",
                    table, exc)

    # -- upsert ladder -------------------------------------------------------

    def _upsert_batch(self, table: str, rows: list[dict[str, Any]]) -> None:
        session = self.session
        if not session.sub_source_columns_supported:
            rows = _strip_sub_source(rows)
        agency_retried = False
        while True:
            try:
                written = self.gateway.upsert(table, rows, CONFLICT_COLUMNS[table])
            except ForeignKeyViolation as exc:
                if table == "routes" and _is_agency_reference(exc) and not agency_retried:
                    rows = self._substitute_first_agency(rows)
                    agency_retried = True
                    session.counters.batch_retries += 1
                    continue
                log.error("Upsert into %s failed: %s", table, exc)
                raise
            except StoreError as exc:
                if session.sub_source_columns_supported and _names_sub_source_column(exc):
                    self._disable_sub_source_columns(table, exc)
                    rows = _strip_sub_source(rows)
                    session.counters.batch_retries += 1
                    continue
                log.error("Upsert into %s failed: %s", table, exc)
                raise
            self.pacer.on_success()
            session.counters.rows_upserted += written
            session.counters.batches_upserted += 1
            return

    def _substitute_first_agency(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        known = sorted(self._existing("agency", "agency_id"))
        if not known:
            raise ReferentialConflictError(
                f"routes reference agencies but tenant "
                f"{self.session.tenant.tenant_id!r} has no agency"
            )
        fixed: list[dict[str, Any]] = []
        for row in rows:
            if row.get("agency_id") not in known:
                record_event(self.session, ForcedAgencyFallback(
                    table="routes",
                    row_id=row.get("route_id"),
                    original_agency_id=row.get("agency_id"),
                    substituted_agency_id=known[0],
                    reason="agency foreign key rejected by store",
                ))
                row = {**row, "agency_id": known[0]}
            fixed.append(row)
        return fixed


def run_import(
    gateway: StoreGateway,
    files: Iterable[FeedFile],
    tenant: TenantConfig,
    mode: str = "full",
    config: LoaderConfig | None = None,
    checkpoint: Checkpoint | None = None,
    cancellation: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> ImportReport:
    """Import ``files`` into ``tenant`` and return the run report."""
    session = ImportSession(
        tenant=tenant,
        mode=mode,
        cancellation=cancellation,
        on_progress=on_progress,
    )
    return FeedImporter(gateway, session, config=config, checkpoint=checkpoint).run(files)


# ---------------------------------------------------------------------------
# Text report
# ---------------------------------------------------------------------------

def build_import_report(report: ImportReport) -> str:
    c = report.counters
    lines = [
        "=== GTFS Import Run Report ===",
        f"tenant           : {report.tenant_id}",
        f"success          : {report.success}",
        f"cancelled        : {report.cancelled}",
        f"progress         : {report.progress:.0%}",
        "",
        "--- Files ---",
    ]
    lines += [
        f"  {f.name:<20} {f.status:<9} read={f.rows_read} upserted={f.rows_upserted}"
        for f in report.files
    ]
    lines += [
        "",
        "--- Rows ---",
        f"rows_read                : {c.rows_read}",
        f"rows_upserted            : {c.rows_upserted}",
        f"batches_upserted         : {c.batches_upserted}",
        f"duplicate_keys_collapsed : {c.duplicate_keys_collapsed}",
        f"validation_gaps          : {c.validation_gaps}",
        f"skipped(ckpt)            : {c.files_skipped_checkpoint}",
        "",
        "--- Identifiers ---",
        f"agency_ids_remapped      : {c.agency_ids_remapped}",
        f"agency_prefix_matches    : {c.agency_prefix_matches}",
        f"forced_agency_fallbacks  : {c.forced_agency_fallbacks}",
        f"route_ids_suffixed       : {c.route_ids_suffixed}",
        f"trip_routes_remapped     : {c.trip_routes_remapped}",
        "",
        "--- Retries ---",
        f"batch_retries            : {c.batch_retries}",
        f"sub_source_cols_stripped : {c.sub_source_columns_stripped}",
    ]
    if report.error:
        lines.append(f"error            : {report.error}")
    if c.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in c.warnings[:10]]
    return "\n".join(lines)
