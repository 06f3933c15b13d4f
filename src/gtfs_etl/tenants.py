"""gtfs_etl.tenants

Tenant (network) registry: create or select the tenant record before an
import, keep its list of sub-sources current, and report which GTFS tables
already hold rows for it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from gtfs_etl.gateway import StoreGateway
from gtfs_etl.gtfs_schema import CONFLICT_COLUMNS, IMPORT_ORDER, TENANT_COLUMN, TENANT_TABLE, file_for_table
from gtfs_etl.sanitize import build_sub_source_metadata
from gtfs_etl.shared import TenantConfig

log = logging.getLogger(__name__)

TENANT_COLUMNS = (TENANT_COLUMN, "network_name", "subnetworks")


class UnknownTenantError(LookupError):
    """Raised when an existing tenant was expected but none was found."""


@dataclass(frozen=True)
class TableStatus:
    table: str
    count: int

    @property
    def exists(self) -> bool:
        return self.count > 0


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def get_tenant(gateway: StoreGateway, tenant_id: str) -> dict[str, Any] | None:
    rows = gateway.select_rows(TENANT_TABLE, TENANT_COLUMNS, {TENANT_COLUMN: tenant_id})
    return rows[0] if rows else None


def merge_sub_source(
    subnetworks: list[dict[str, Any]],
    metadata: dict[str, Any],
) -> list[dict[str, Any]]:
    """Replace the entry with the same name, or append a new one."""
    merged: list[dict[str, Any]] = []
    replaced = False
    for entry in subnetworks:
        if isinstance(entry, dict) and entry.get("name") == metadata["name"]:
            merged.append({**entry, **metadata})
            replaced = True
        else:
            merged.append(entry)
    if not replaced:
        merged.append(metadata)
    return merged


def ensure_tenant(
    gateway: StoreGateway,
    tenant: TenantConfig,
    create: bool = False,
) -> dict[str, Any]:
    """Return the tenant record, creating it when ``create`` is set.

    The tenant's sub-source (if any) is merged into ``subnetworks`` by name.

    Raises:
        UnknownTenantError: the tenant does not exist and create is False.
        ValueError: a new tenant is requested without a name.
    """
    metadata = build_sub_source_metadata(tenant)
    existing = get_tenant(gateway, tenant.tenant_id)

    if existing is None:
        if not create:
            raise UnknownTenantError(f"tenant {tenant.tenant_id!r} does not exist")
        if not tenant.tenant_name:
            raise ValueError(f"tenant_name is required to create tenant {tenant.tenant_id!r}")
        record = {
            TENANT_COLUMN: tenant.tenant_id,
            "network_name": tenant.tenant_name,
            "subnetworks": [metadata] if metadata else [],
        }
        gateway.upsert(TENANT_TABLE, [record], CONFLICT_COLUMNS[TENANT_TABLE])
        log.info("Created tenant %s (%s)", tenant.tenant_id, tenant.tenant_name)
        return record

    if metadata is None:
        return existing
    subnetworks = merge_sub_source(list(existing.get("subnetworks") or []), metadata)
    if subnetworks != existing.get("subnetworks"):
        record = {**existing, "subnetworks": subnetworks}
        gateway.upsert(TENANT_TABLE, [record], CONFLICT_COLUMNS[TENANT_TABLE])
        log.info("Recorded sub-source %r on tenant %s", metadata["name"], tenant.tenant_id)
        return record
    return existing


# ---------------------------------------------------------------------------
# Table status
# ---------------------------------------------------------------------------

def table_status(gateway: StoreGateway, tenant_id: str) -> dict[str, TableStatus]:
    """Row count per GTFS table for the tenant, in import order."""
    return {
        table: TableStatus(table, gateway.count_where(table, {TENANT_COLUMN: tenant_id}))
        for table in IMPORT_ORDER
    }


def missing_files(status: dict[str, TableStatus]) -> list[str]:
    """Feed files whose table is still empty for the tenant."""
    return [file_for_table(t) for t, s in status.items() if not s.exists]


def build_status_report(tenant_id: str, status: dict[str, TableStatus]) -> str:
    lines = [f"=== GTFS Table Status: {tenant_id} ==="]
    lines += [f"  {s.table:<16} {s.count}" for s in status.values()]
    missing = missing_files(status)
    lines += ["", f"missing files    : {', '.join(missing) if missing else 'none'}"]
    return "\n".join(lines)
