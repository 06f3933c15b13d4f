"""Unit test fixtures (in-memory store, zero-delay config, sample tenants)."""

from __future__ import annotations

import pytest

from fakes import ScriptedGateway, add_tenant
from gtfs_etl.loader_config import LoaderConfig
from gtfs_etl.shared import TenantConfig


@pytest.fixture
def fast_config() -> LoaderConfig:
    """Defaults with every pause set to zero."""
    return LoaderConfig(
        import_batch_delay_seconds=0.0,
        delete_batch_delay_seconds=0.0,
        delete_table_delay_seconds=0.0,
        final_retry_delay_seconds=0.0,
    )


@pytest.fixture
def gateway() -> ScriptedGateway:
    gw = ScriptedGateway()
    add_tenant(gw)
    gw.calls.clear()
    return gw


@pytest.fixture
def tenant() -> TenantConfig:
    return TenantConfig(tenant_id="demo", tenant_name="Demo Transit")


@pytest.fixture
def night_tenant() -> TenantConfig:
    return TenantConfig(
        tenant_id="demo",
        tenant_name="Demo Transit",
        sub_source_name="Night Bus",
        realtime_type="gtfs-rt",
        realtime_url="https://rt.example.org/night",
    )
