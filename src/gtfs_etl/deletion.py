"""gtfs_etl.deletion

Batched deletion of a tenant's GTFS rows under a store that caps the rows
and the time of every call.

Tenant deletion phases (progress percent):
   0-15   favorites side tables, best-effort
  15-75   the nine GTFS tables in DELETION_ORDER, each cleared batch by batch
  75-90   one more direct delete on stops
  90-100  the tenant record itself

Per table the batch size follows an explicit state machine:

  NORMAL --capacity error--> THROTTLED (batch halved, kept after success)
  THROTTLED --capacity error, batch would drop below the floor-->
      SPECIALIZED_FALLBACK (tables in SPECIALIZED_FALLBACK_TABLES: one
      unordered, unbatched delete) or BatchSizeFloorReached (others)

A foreign-key violation marks the table "blocked"; any other store error
marks it "failed". Either way the run moves on to the next table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from gtfs_etl.gateway import CapacityExceeded, ForeignKeyViolation, StoreError, StoreGateway
from gtfs_etl.gtfs_schema import (
    DELETION_ORDER,
    DEPENDENT_TABLES,
    FAVORITE_TABLES,
    FINAL_RETRY_TABLE,
    ORDER_COLUMNS,
    SCOPED_DELETION_ORDER,
    SPECIALIZED_FALLBACK_TABLES,
    TENANT_COLUMN,
    TENANT_TABLE,
)
from gtfs_etl.loader_config import LoaderConfig
from gtfs_etl.shared import BatchPacer, CancellationToken, DeletionCounters, RunCancelled

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BatchSizeFloorReached(Exception):
    def __init__(self, table: str, batch_size: int) -> None:
        super().__init__(
            f"batch size for {table} cannot shrink below {batch_size}; giving up on this table"
        )
        self.table = table
        self.batch_size = batch_size


class DeletionStalledError(Exception):
    """A delete call succeeded but the table's row count did not go down."""


class TenantStillReferencedError(Exception):
    def __init__(self, tenant_id: str, table: str | None) -> None:
        where = f"table {table!r}" if table else "another table"
        super().__init__(
            f"tenant {tenant_id!r} cannot be deleted: rows in {where} still reference it"
        )
        self.tenant_id = tenant_id
        self.table = table


# ---------------------------------------------------------------------------
# Batch state machine
# ---------------------------------------------------------------------------

class BatchState(Enum):
    NORMAL = "normal"
    THROTTLED = "throttled"
    SPECIALIZED_FALLBACK = "specialized_fallback"


@dataclass
class BatchStateMachine:
    table: str
    batch_size: int = 150
    min_batch_size: int = 2
    fallback_allowed: bool = False
    state: BatchState = BatchState.NORMAL

    def on_success(self) -> BatchState:
        # reduced size is kept for the rest of the table
        return self.state

    def on_capacity_exceeded(self) -> BatchState:
        halved = self.batch_size // 2
        if halved < self.min_batch_size:
            if not self.fallback_allowed:
                raise BatchSizeFloorReached(self.table, self.batch_size)
            self.state = BatchState.SPECIALIZED_FALLBACK
            return self.state
        self.batch_size = halved
        self.state = BatchState.THROTTLED
        return self.state


# ---------------------------------------------------------------------------
# Results / progress
# ---------------------------------------------------------------------------

@dataclass
class TableDeletionResult:
    table: str
    status: str = "pending"  # pending | empty | cleared | blocked | failed | cancelled
    rows_deleted: int = 0
    batches: int = 0
    final_batch_size: int | None = None
    final_state: str = BatchState.NORMAL.value
    error: str | None = None


@dataclass(frozen=True)
class DeletionProgress:
    percent: float
    phase: str
    current_table: str | None
    rows_deleted: int


ProgressCallback = Callable[[DeletionProgress], None]


@dataclass
class DeletionReport:
    tenant_id: str
    tables: list[TableDeletionResult] = field(default_factory=list)
    tenant_record_requested: bool = False
    tenant_deleted: bool = False
    error: str | None = None
    percent: float = 0.0
    rows_deleted: int = 0
    cancelled: bool = False
    counters: DeletionCounters = field(default_factory=DeletionCounters)

    @property
    def complete(self) -> bool:
        if self.error or self.cancelled:
            return False
        if any(t.status in ("blocked", "failed") for t in self.tables):
            return False
        return self.tenant_deleted or not self.tenant_record_requested

    @property
    def partial(self) -> bool:
        """Some rows went away but the requested deletion did not finish."""
        return not self.complete and self.rows_deleted > 0

    def table(self, name: str) -> TableDeletionResult | None:
        for result in self.tables:
            if result.table == name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "complete": self.complete,
            "partial": self.partial,
            "cancelled": self.cancelled,
            "tenant_deleted": self.tenant_deleted,
            "error": self.error,
            "percent": round(self.percent, 2),
            "rows_deleted": self.rows_deleted,
            "tables": [vars(t) for t in self.tables],
            "counters": self.counters.to_dict(),
        }


# ---------------------------------------------------------------------------
# Scope (table selection)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeletionScope:
    tables: tuple[str, ...]
    delete_tenant_record: bool


def deletion_scope(selected: Iterable[str], delete_tenant_record: bool = False) -> DeletionScope:
    """Expand a table selection with its dependents, in deletion order.

    Selecting the tenant table itself means every table plus the tenant
    record.
    """
    selected = list(selected)
    unknown = [t for t in selected if t != TENANT_TABLE and t not in SCOPED_DELETION_ORDER]
    if unknown:
        raise ValueError(f"unknown tables: {unknown}")

    chosen: set[str] = set()
    if TENANT_TABLE in selected:
        chosen.update(SCOPED_DELETION_ORDER)
    queue = [t for t in selected if t != TENANT_TABLE]
    expanded: set[str] = set()
    while queue:
        table = queue.pop(0)
        if table in expanded:
            continue
        expanded.add(table)
        chosen.add(table)
        queue.extend(DEPENDENT_TABLES.get(table, ()))

    return DeletionScope(
        tables=tuple(t for t in SCOPED_DELETION_ORDER if t in chosen),
        delete_tenant_record=delete_tenant_record or TENANT_TABLE in selected,
    )


def delete_table_data(gateway: StoreGateway, tenant_id: str, table: str) -> int:
    """Remove all of the tenant's rows from one table in a single statement."""
    deleted = gateway.delete_where(table, {TENANT_COLUMN: tenant_id})
    log.info("Deleted %d rows from %s for tenant %s", deleted, table, tenant_id)
    return deleted


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DeletionEngine:
    def __init__(
        self,
        gateway: StoreGateway,
        tenant_id: str,
        config: LoaderConfig | None = None,
        cancellation: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
        pacer: BatchPacer | None = None,
    ) -> None:
        self.gateway = gateway
        self.tenant_id = tenant_id
        self.config = config or LoaderConfig()
        self.cancellation = cancellation
        self.on_progress = on_progress
        self.pacer = pacer or BatchPacer(
            base_delay=self.config.delete_batch_delay_seconds,
            max_backoff_mult=self.config.max_backoff_multiplier,
        )
        self.report = DeletionReport(tenant_id=tenant_id)
        self._phase = "start"
        self._current_table: str | None = None

    @property
    def _scope(self) -> dict[str, Any]:
        return {TENANT_COLUMN: self.tenant_id}

    def _check_cancelled(self) -> None:
        if self.cancellation is not None:
            self.cancellation.raise_if_cancelled()

    def _progress(self, percent: float, phase: str | None = None) -> None:
        if phase is not None:
            self._phase = phase
        self.report.percent = max(self.report.percent, min(percent, 100.0))
        if self.on_progress is not None:
            self.on_progress(DeletionProgress(
                percent=self.report.percent,
                phase=self._phase,
                current_table=self._current_table,
                rows_deleted=self.report.rows_deleted,
            ))

    def _add_rows(self, n: int) -> None:
        self.report.rows_deleted += n
        self.report.counters.rows_deleted += n

    # -- entry points ------------------------------------------------------

    def delete_tenant(self, delete_tenant_record: bool = True) -> DeletionReport:
        """Clear every table for the tenant, then (optionally) the tenant record."""
        report = self.report
        report.tenant_record_requested = delete_tenant_record
        log.info("Deleting tenant %s (delete record=%s)", self.tenant_id, delete_tenant_record)
        try:
            self._clear_favorites(0.0, 15.0)
            self._clear_tables(DELETION_ORDER, 15.0, 75.0)
            self._final_retry(75.0, 90.0)
            if delete_tenant_record:
                self._delete_tenant_record()
            self._progress(100.0, "done")
        except RunCancelled:
            self._mark_cancelled()
        return report

    def delete_tables(
        self,
        tables: Sequence[str],
        delete_tenant_record: bool = False,
    ) -> DeletionReport:
        """Clear exactly ``tables`` (already expanded and ordered) for the tenant."""
        report = self.report
        report.tenant_record_requested = delete_tenant_record
        log.info("Deleting tables %s for tenant %s", list(tables), self.tenant_id)
        try:
            self._clear_tables(tables, 0.0, 90.0)
            if delete_tenant_record:
                self._delete_tenant_record()
            self._progress(100.0, "done")
        except RunCancelled:
            self._mark_cancelled()
        return report

    def _mark_cancelled(self) -> None:
        self.report.cancelled = True
        for result in self.report.tables:
            if result.status == "pending":
                result.status = "cancelled"
        log.warning("Deletion for tenant %s cancelled at %.0f%%", self.tenant_id, self.report.percent)

    # -- phases ----------------------------------------------------------------

    def _clear_favorites(self, start: float, end: float) -> None:
        self._progress(start, "favorites")
        step = (end - start) / len(FAVORITE_TABLES)
        for i, table in enumerate(FAVORITE_TABLES):
            self._check_cancelled()
            self._current_table = table
            try:
                self._add_rows(self.gateway.delete_where(table, self._scope))
            except StoreError as exc:
                self.report.counters.favorites_errors += 1
                self.report.counters.warnings.append(f"{table}: {exc}")
                log.warning("Could not clear %s for tenant %s: %s", table, self.tenant_id, exc)
            self._progress(start + step * (i + 1))

    def _clear_tables(self, tables: Sequence[str], start: float, end: float) -> None:
        self._progress(start, "tables")
        if not tables:
            return
        step = (end - start) / len(tables)
        for i, table in enumerate(tables):
            if i:
                self.pacer.sleep(self.config.delete_table_delay_seconds)
            self.clear_table(table, start + step * i, start + step * (i + 1))

    def _final_retry(self, start: float, end: float) -> None:
        self._progress(start, "final_retry")
        self._check_cancelled()
        self._current_table = FINAL_RETRY_TABLE
        self.pacer.sleep(self.config.final_retry_delay_seconds)
        try:
            deleted = self.gateway.delete_where(FINAL_RETRY_TABLE, self._scope)
        except StoreError as exc:
            log.warning("Final %s delete for tenant %s failed: %s",
                        FINAL_RETRY_TABLE, self.tenant_id, exc)
        else:
            self._add_rows(deleted)
            result = self.report.table(FINAL_RETRY_TABLE)
            if result is not None and deleted:
                result.rows_deleted += deleted
                if result.status in ("blocked", "failed"):
                    log.info("Final delete cleared %d %s rows left by the batched pass",
                             deleted, FINAL_RETRY_TABLE)
                    result.status = "cleared"
                    result.error = None
        self._progress(end)

    def _delete_tenant_record(self) -> None:
        self._progress(90.0, "tenant_record")
        self._check_cancelled()
        self._current_table = TENANT_TABLE
        try:
            self.gateway.delete_one(TENANT_TABLE, self._scope)
        except ForeignKeyViolation as exc:
            err = TenantStillReferencedError(self.tenant_id, exc.referencing_table)
            self.report.error = str(err)
            log.error("%s", err)
            return
        except StoreError as exc:
            self.report.error = f"failed to delete tenant record: {exc}"
            log.error("Failed to delete tenant record %s: %s", self.tenant_id, exc)
            return
        self.report.tenant_deleted = True
        log.info("Deleted tenant record %s", self.tenant_id)

    # -- one table -------------------------------------------------------------

    def clear_table(
        self,
        table: str,
        start: float = 0.0,
        end: float = 100.0,
    ) -> TableDeletionResult:
        """Delete every tenant row of ``table`` batch by batch."""
        counters = self.report.counters
        result = TableDeletionResult(table)
        self.report.tables.append(result)
        self._current_table = table
        self._check_cancelled()

        machine = BatchStateMachine(
            table=table,
            batch_size=self.config.delete_batch_size,
            min_batch_size=self.config.delete_min_batch_size,
            fallback_allowed=table in SPECIALIZED_FALLBACK_TABLES,
        )
        order_by = ORDER_COLUMNS.get(table)
        try:
            remaining = initial = self.gateway.count_where(table, self._scope)
            if remaining == 0:
                result.status = "empty"
                self._progress(end)
                return result
            log.info("Deleting %d rows from %s for tenant %s", initial, table, self.tenant_id)
            while remaining > 0:
                self._check_cancelled()
                if machine.state is BatchState.SPECIALIZED_FALLBACK:
                    self.gateway.delete_where(table, self._scope)
                    counters.fallback_deletes += 1
                    log.warning("Cleared %s with one unbatched delete (%d rows)", table, remaining)
                    deleted, remaining = remaining, 0
                else:
                    try:
                        self.gateway.delete_where(
                            table, self._scope, order_by=order_by, limit=machine.batch_size
                        )
                    except CapacityExceeded as exc:
                        counters.capacity_errors += 1
                        self.pacer.on_failure()
                        log.warning("Capacity exceeded deleting %s at batch size %d: %s",
                                    table, machine.batch_size, exc)
                        machine.on_capacity_exceeded()
                        self.pacer.sleep()
                        continue
                    self.pacer.on_success()
                    machine.on_success()
                    current = self.gateway.count_where(table, self._scope)
                    deleted = remaining - current
                    if deleted <= 0:
                        raise DeletionStalledError(
                            f"delete on {table} made no progress ({remaining} rows remain)"
                        )
                    remaining = current
                result.rows_deleted += deleted
                result.batches += 1
                counters.batches_deleted += 1
                self._add_rows(deleted)
                self._progress(start + (end - start) * (initial - remaining) / initial)
                if remaining:
                    self.pacer.sleep()
            result.status = "cleared"
            counters.tables_cleared += 1
        except ForeignKeyViolation as exc:
            # A blocked table records no deletions; run totals still count
            # the rows earlier batches removed.
            result.status = "blocked"
            result.rows_deleted = 0
            result.error = str(exc)
            counters.tables_blocked += 1
            counters.warnings.append(f"{table}: blocked by {exc.constraint_name or 'foreign key'}")
            log.warning("Deletion of %s blocked by a foreign key: %s", table, exc)
        except (StoreError, BatchSizeFloorReached, DeletionStalledError) as exc:
            result.status = "failed"
            result.error = str(exc)
            counters.tables_failed += 1
            counters.warnings.append(f"{table}: {exc}")
            log.error("Deletion of %s failed: %s", table, exc)
        finally:
            result.final_batch_size = machine.batch_size
            result.final_state = machine.state.value
        self._progress(end)
        return result


# ---------------------------------------------------------------------------
# Convenience wrappers
# ---------------------------------------------------------------------------

def delete_tenant(
    gateway: StoreGateway,
    tenant_id: str,
    delete_tenant_record: bool = True,
    config: LoaderConfig | None = None,
    cancellation: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> DeletionReport:
    engine = DeletionEngine(gateway, tenant_id, config, cancellation, on_progress)
    return engine.delete_tenant(delete_tenant_record)


def run_table_deletion(
    gateway: StoreGateway,
    tenant_id: str,
    selected: Iterable[str],
    delete_tenant_record: bool = False,
    config: LoaderConfig | None = None,
    cancellation: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> DeletionReport:
    """Clear the selected tables (plus dependents) for a tenant."""
    scope = deletion_scope(selected, delete_tenant_record)
    engine = DeletionEngine(gateway, tenant_id, config, cancellation, on_progress)
    return engine.delete_tables(scope.tables, scope.delete_tenant_record)


# ---------------------------------------------------------------------------
# Text report
# ---------------------------------------------------------------------------

def build_deletion_report(report: DeletionReport) -> str:
    c = report.counters
    lines = [
        "=== GTFS Deletion Run Report ===",
        f"tenant           : {report.tenant_id}",
        f"complete         : {report.complete}",
        f"partial          : {report.partial}",
        f"cancelled        : {report.cancelled}",
        f"tenant_deleted   : {report.tenant_deleted}",
        f"percent          : {report.percent:.0f}",
        "",
        "--- Tables ---",
    ]
    for t in report.tables:
        line = f"  {t.table:<16} {t.status:<9} rows={t.rows_deleted} batches={t.batches}"
        if t.final_state != BatchState.NORMAL.value:
            line += f" state={t.final_state} batch_size={t.final_batch_size}"
        lines.append(line)
    lines += [
        "",
        "--- Totals ---",
        f"rows_deleted     : {c.rows_deleted}",
        f"batches_deleted  : {c.batches_deleted}",
        f"capacity_errors  : {c.capacity_errors}",
        f"fallback_deletes : {c.fallback_deletes}",
        f"tables_blocked   : {c.tables_blocked}",
        f"tables_failed    : {c.tables_failed}",
        f"favorites_errors : {c.favorites_errors}",
    ]
    if report.error:
        lines.append(f"error            : {report.error}")
    if c.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in c.warnings[:10]]
    return "\n".join(lines)
