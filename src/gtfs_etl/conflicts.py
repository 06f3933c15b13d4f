"""gtfs_etl.conflicts

Identifier conflict resolution applied while merging a feed into a tenant
that may already hold rows from other sub-sources.

Rules (in the order the importer applies them):
  1. agency: an incoming agency_id that already exists for the tenant under
     a different sub-source is renamed "{agency_id}_{sub_source}" and the
     rename is remembered for the rest of the session.
  2. routes.agency_id: rewritten through the session mapping; an id still
     unknown to the tenant is matched by shared prefix, else replaced by the
     first existing agency id (a ForcedAgencyFallback, never silent).
  3. routes.route_id: suffixed like agencies when the existing route belongs
     to a different sub-source.
  4. trips.route_id: rewritten through the session's route mapping.

Nothing here raises; corrected rows are returned and events recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from gtfs_etl.normalize import id_prefix, suffixed_id

if TYPE_CHECKING:
    from gtfs_etl.importer import ImportSession

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ForcedAgencyFallback:
    table: str
    row_id: str | None
    original_agency_id: str | None
    substituted_agency_id: str
    reason: str

    @property
    def message(self) -> str:
        return (
            f"{self.table} {self.row_id!r}: agency_id {self.original_agency_id!r} "
            f"replaced by {self.substituted_agency_id!r} ({self.reason})"
        )


@dataclass(frozen=True)
class IdentifierRemapped:
    table: str
    column: str
    original_id: str
    new_id: str
    reason: str

    @property
    def message(self) -> str:
        return (
            f"{self.table}.{self.column} {self.original_id!r} -> {self.new_id!r} "
            f"({self.reason})"
        )


ConflictEvent = ForcedAgencyFallback | IdentifierRemapped


def record_event(session: "ImportSession", event: ConflictEvent) -> None:
    session.events.append(event)
    session.counters.warnings.append(event.message)
    if isinstance(event, ForcedAgencyFallback):
        session.counters.forced_agency_fallbacks += 1
        log.warning("Forced agency fallback: %s", event.message)
    else:
        log.info("Identifier remapped: %s", event.message)


# ---------------------------------------------------------------------------
# Rule 1: agency collisions
# ---------------------------------------------------------------------------

@dataclass
class AgencyRemapPlan:
    rows: list[dict[str, Any]]
    mapping: dict[str, str] = field(default_factory=dict)
    events: list[IdentifierRemapped] = field(default_factory=list)


def _collides(existing: Mapping[str, str | None], identifier: str, sub_source: str) -> bool:
    # An id already owned by the same sub-source is not a collision, so
    # re-importing a sub-source updates its rows instead of suffixing again.
    return identifier in existing and (existing[identifier] or None) != sub_source


def plan_agency_remap(
    rows: Iterable[dict[str, Any]],
    existing: Mapping[str, str | None],
    sub_source_name: str | None,
) -> AgencyRemapPlan:
    """Rename incoming agencies that collide with another sub-source's agency.

    ``existing`` maps the tenant's agency_id -> subnetwork_name. Without a
    sub-source nothing is renamed.
    """
    plan = AgencyRemapPlan(rows=[])
    sub = sub_source_name.strip() if sub_source_name else None
    for row in rows:
        agency_id = row.get("agency_id")
        if sub and agency_id and _collides(existing, agency_id, sub):
            new_id = suffixed_id(agency_id, sub)
            row = {**row, "agency_id": new_id, "_original_agency_id": agency_id}
            plan.mapping[agency_id] = new_id
            plan.events.append(IdentifierRemapped(
                "agency", "agency_id", agency_id, new_id,
                "agency_id already used by another sub-source",
            ))
        plan.rows.append(row)
    return plan


def remap_agency_rows(
    rows: Iterable[dict[str, Any]],
    session: "ImportSession",
    existing: Mapping[str, str | None],
) -> list[dict[str, Any]]:
    plan = plan_agency_remap(rows, existing, session.tenant.sub_source_name)
    session.agency_id_mapping.update(plan.mapping)
    for event in plan.events:
        session.counters.agency_ids_remapped += 1
        record_event(session, event)
    return plan.rows


# ---------------------------------------------------------------------------
# Rules 2-3: routes
# ---------------------------------------------------------------------------

def match_agency_prefix(agency_id: str, known: Iterable[str]) -> str | None:
    """First known id sharing agency_id's prefix ('AG_X' matches 'AG' or 'AG_Y')."""
    base = id_prefix(agency_id)
    for candidate in sorted(known):
        if candidate == base or candidate.startswith(base + "_"):
            return candidate
    return None


def _resolve_agency(
    row: dict[str, Any],
    session: "ImportSession",
    known: list[str],
) -> None:
    agency_id = row.get("agency_id")
    if agency_id in session.agency_id_mapping:
        agency_id = session.agency_id_mapping[agency_id]
        row["agency_id"] = agency_id
    if agency_id is None or agency_id in known or not known:
        return
    matched = match_agency_prefix(agency_id, known)
    if matched is not None:
        row["agency_id"] = matched
        session.counters.agency_prefix_matches += 1
        log.info("routes %r: agency_id %r matched by prefix to %r",
                 row.get("route_id"), agency_id, matched)
        return
    row["agency_id"] = known[0]
    record_event(session, ForcedAgencyFallback(
        table="routes",
        row_id=row.get("route_id"),
        original_agency_id=agency_id,
        substituted_agency_id=known[0],
        reason="agency_id unknown for tenant",
    ))


def resolve_route_rows(
    rows: Iterable[dict[str, Any]],
    session: "ImportSession",
    existing_agency_ids: Iterable[str],
    existing_routes: Mapping[str, str | None],
) -> list[dict[str, Any]]:
    """Apply the agency and route_id rules to a batch of routes rows.

    ``existing_routes`` maps the tenant's route_id -> subnetwork_name.
    When the tenant has no agency at all the agency_id is left unchanged
    and the store's foreign key decides.
    """
    known = sorted(set(existing_agency_ids))
    sub = session.tenant.sub_source_name.strip() if session.tenant.has_sub_source else None  # type: ignore[union-attr]
    resolved: list[dict[str, Any]] = []
    for row in rows:
        row = dict(row)
        _resolve_agency(row, session, known)

        route_id = row.get("route_id")
        if sub and route_id and _collides(existing_routes, route_id, sub):
            new_id = suffixed_id(route_id, sub)
            row["route_id"] = new_id
            row["_original_route_id"] = route_id
            session.route_id_mapping[route_id] = new_id
            session.counters.route_ids_suffixed += 1
            record_event(session, IdentifierRemapped(
                "routes", "route_id", route_id, new_id,
                "route_id already used by another sub-source",
            ))
        resolved.append(row)
    return resolved


# ---------------------------------------------------------------------------
# Rule 4: trips
# ---------------------------------------------------------------------------

def remap_trip_route_ids(
    rows: Iterable[dict[str, Any]],
    session: "ImportSession",
) -> list[dict[str, Any]]:
    if not session.route_id_mapping:
        return list(rows)
    remapped: list[dict[str, Any]] = []
    for row in rows:
        route_id = row.get("route_id")
        if route_id in session.route_id_mapping:
            row = {**row, "route_id": session.route_id_mapping[route_id]}
            session.counters.trip_routes_remapped += 1
        remapped.append(row)
    return remapped
