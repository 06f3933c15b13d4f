"""Test doubles shared by the unit tests.

No database required: every test runs against InMemoryGateway, optionally
wrapped so individual calls can be made to fail on demand.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from gtfs_etl.feed_reader import FeedFile
from gtfs_etl.gateway import InMemoryGateway
from gtfs_etl.gtfs_schema import table_for_file


# ---------------------------------------------------------------------------
# Scripted gateway
# ---------------------------------------------------------------------------

@dataclass
class ScriptedGateway(InMemoryGateway):
    """InMemoryGateway that records calls and raises queued errors.

    ``fail_next("delete_where", "shapes", CapacityExceeded("timeout"))``
    makes the next delete on shapes raise before touching any row.
    """

    failures: dict[tuple[str, str], list[Exception]] = field(default_factory=dict)
    calls: list[tuple[str, str, Any]] = field(default_factory=list)
    deleted: list[tuple[str, int]] = field(default_factory=list)

    def fail_next(self, method: str, table: str, *errors: Exception) -> None:
        self.failures.setdefault((method, table), []).extend(errors)

    def _maybe_fail(self, method: str, table: str) -> None:
        queue = self.failures.get((method, table))
        if queue:
            raise queue.pop(0)

    def upsert(self, table: str, rows: Sequence[dict[str, Any]], conflict_columns: Sequence[str]) -> int:
        self.calls.append(("upsert", table, len(rows)))
        self._maybe_fail("upsert", table)
        return super().upsert(table, rows, conflict_columns)

    def delete_where(
        self,
        table: str,
        predicate: dict[str, Any],
        order_by: str | None = None,
        limit: int | None = None,
    ) -> int:
        self.calls.append(("delete_where", table, limit))
        self._maybe_fail("delete_where", table)
        n = super().delete_where(table, predicate, order_by=order_by, limit=limit)
        self.deleted.append((table, n))
        return n

    def delete_one(self, table: str, predicate: dict[str, Any]) -> None:
        self.calls.append(("delete_one", table, None))
        self._maybe_fail("delete_one", table)
        super().delete_one(table, predicate)

    def count_where(self, table: str, predicate: dict[str, Any]) -> int:
        self._maybe_fail("count_where", table)
        return super().count_where(table, predicate)

    def calls_for(self, method: str, table: str) -> list[Any]:
        return [arg for m, t, arg in self.calls if m == method and t == table]


def add_tenant(gateway: InMemoryGateway, tenant_id: str = "demo", name: str = "Demo Transit") -> None:
    gateway.upsert(
        "networks",
        [{"network_id": tenant_id, "network_name": name, "subnetworks": []}],
        ("network_id",),
    )


def feed_file(name: str, text: str) -> FeedFile:
    return FeedFile(name=name, table=table_for_file(name), text=text)  # type: ignore[arg-type]

