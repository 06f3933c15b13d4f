"""gtfs_etl.sanitize

Projects raw feed records onto the canonical column set of their table and
coerces each value to its declared type. Pure; never raises. A value that
cannot be coerced becomes None and is counted as a validation gap.
"""

from __future__ import annotations

from typing import Any, Iterable, Iterator

from gtfs_etl.gtfs_schema import (
    BOOLEAN_FIELDS,
    COORDINATE_FIELDS,
    DECIMAL_FIELDS,
    INTEGER_FIELDS,
    TENANT_COLUMN,
    VALID_COLUMNS,
)
from gtfs_etl.normalize import parse_coordinate, parse_decimal, parse_flag, parse_int, trim
from gtfs_etl.shared import ImportCounters, TenantConfig


def build_sub_source_metadata(tenant: TenantConfig) -> dict[str, Any] | None:
    """Metadata object for the tenant's sub-source, or None without one.

    The ``realtime`` key is present only when at least one real-time field
    is set.
    """
    if not tenant.has_sub_source:
        return None
    metadata: dict[str, Any] = {"name": tenant.sub_source_name.strip()}  # type: ignore[union-attr]
    realtime = {
        key: value
        for key, value in (
            ("type", trim(tenant.realtime_type)),
            ("url", trim(tenant.realtime_url)),
            ("api_key", trim(tenant.realtime_api_key)),
        )
        if value is not None
    }
    if realtime:
        metadata["realtime"] = realtime
    return metadata


def _coerce(table: str, column: str, raw: Any) -> tuple[Any, bool]:
    """Return (value, gap) where gap marks a non-empty value that failed coercion."""
    if column in BOOLEAN_FIELDS.get(table, ()):
        return parse_flag(raw), False
    if column in INTEGER_FIELDS.get(table, ()):
        value = parse_int(raw)
    elif column in DECIMAL_FIELDS.get(table, ()):
        value = parse_decimal(raw)
    elif column in COORDINATE_FIELDS:
        value = parse_coordinate(raw)
    else:
        return trim(raw), False
    return value, value is None and trim(raw) is not None


def _sanitize(
    record: dict[str, Any],
    table: str,
    tenant: TenantConfig,
    metadata: dict[str, Any] | None,
) -> tuple[dict[str, Any], int]:
    row: dict[str, Any] = {TENANT_COLUMN: tenant.tenant_id}
    gaps = 0
    for column in VALID_COLUMNS.get(table, ()):
        if column not in record:
            continue
        value, gap = _coerce(table, column, record[column])
        row[column] = value
        gaps += gap
    if tenant.has_sub_source:
        row["subnetwork_name"] = tenant.sub_source_name.strip()  # type: ignore[union-attr]
        if metadata is not None and "realtime" in metadata:
            row["subnetwork_metadata"] = metadata
    return row, gaps


def sanitize_row(record: dict[str, Any], table: str, tenant: TenantConfig) -> dict[str, Any]:
    """Return the canonical, typed row for one feed record."""
    row, _ = _sanitize(record, table, tenant, build_sub_source_metadata(tenant))
    return row


def sanitize_rows(
    records: Iterable[dict[str, Any]],
    table: str,
    tenant: TenantConfig,
    counters: ImportCounters | None = None,
) -> Iterator[dict[str, Any]]:
    """Stream sanitized rows, counting coercion gaps and rows read."""
    metadata = build_sub_source_metadata(tenant)
    for record in records:
        row, gaps = _sanitize(record, table, tenant, metadata)
        if counters is not None:
            counters.rows_read += 1
            counters.validation_gaps += gaps
        yield row
