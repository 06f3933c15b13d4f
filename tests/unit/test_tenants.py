"""Unit tests for gtfs_etl.tenants."""

from __future__ import annotations

import pytest

from fakes import ScriptedGateway
from gtfs_etl.shared import TenantConfig
from gtfs_etl.tenants import (
    UnknownTenantError,
    build_status_report,
    ensure_tenant,
    get_tenant,
    merge_sub_source,
    missing_files,
    table_status,
)


class TestEnsureTenant:
    def test_existing_tenant_returned(self, gateway, tenant):
        record = ensure_tenant(gateway, tenant)
        assert record["network_name"] == "Demo Transit"
        assert gateway.calls_for("upsert", "networks") == []

    def test_unknown_tenant_raises_without_create(self):
        with pytest.raises(UnknownTenantError, match="'ghost'"):
            ensure_tenant(ScriptedGateway(), TenantConfig(tenant_id="ghost"))

    def test_create_requires_name(self):
        with pytest.raises(ValueError, match="tenant_name"):
            ensure_tenant(ScriptedGateway(), TenantConfig(tenant_id="new"), create=True)

    def test_create(self):
        gw = ScriptedGateway()
        ensure_tenant(gw, TenantConfig(tenant_id="new", tenant_name="New Transit"), create=True)
        assert get_tenant(gw, "new") == {
            "network_id": "new", "network_name": "New Transit", "subnetworks": [],
        }

    def test_create_with_sub_source(self, night_tenant):
        gw = ScriptedGateway()
        record = ensure_tenant(gw, night_tenant, create=True)
        assert record["subnetworks"][0]["name"] == "Night Bus"

    def test_sub_source_appended_once(self, gateway, night_tenant):
        ensure_tenant(gateway, night_tenant)
        ensure_tenant(gateway, night_tenant)
        subnetworks = get_tenant(gateway, "demo")["subnetworks"]
        assert [s["name"] for s in subnetworks] == ["Night Bus"]
        assert gateway.calls_for("upsert", "networks") == [1]


class TestMergeSubSource:
    def test_replaces_by_name(self):
        merged = merge_sub_source(
            [{"name": "Night Bus", "realtime": {"type": "old"}}, {"name": "Tram"}],
            {"name": "Night Bus", "realtime": {"type": "gtfs-rt"}},
        )
        assert merged == [{"name": "Night Bus", "realtime": {"type": "gtfs-rt"}}, {"name": "Tram"}]

    def test_appends_new_name(self):
        assert merge_sub_source([{"name": "Tram"}], {"name": "Ferry"}) == [
            {"name": "Tram"}, {"name": "Ferry"},
        ]


class TestTableStatus:
    def test_counts_and_missing_files(self, gateway):
        gateway.upsert("agency", [{"network_id": "demo", "agency_id": "A1"}], ("network_id", "agency_id"))
        gateway.upsert("stops", [{"network_id": "demo", "stop_id": "S1"}], ("network_id", "stop_id"))
        status = table_status(gateway, "demo")
        assert status["agency"].exists
        assert status["stops"].count == 1
        assert not status["routes"].exists
        missing = missing_files(status)
        assert "agency.txt" not in missing
        assert "routes.txt" in missing

    def test_status_report_lists_missing(self, gateway):
        text = build_status_report("demo", table_status(gateway, "demo"))
        assert text.startswith("=== GTFS Table Status: demo ===")
        assert "stop_times.txt" in text
