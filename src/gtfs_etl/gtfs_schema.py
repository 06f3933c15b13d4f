"""gtfs_etl.gtfs_schema

Static tables describing the GTFS tables this loader manages: file-to-table
mapping, canonical column allow-lists, coercion types, natural keys,
foreign keys, and the import / deletion orders.
"""

from __future__ import annotations

from dataclasses import dataclass

TENANT_TABLE = "networks"
TENANT_COLUMN = "network_id"

# ---------------------------------------------------------------------------
# File → table mapping
# ---------------------------------------------------------------------------

GTFS_FILES: dict[str, str] = {
    "agency.txt": "agency",
    "calendar.txt": "calendar",
    "calendar_dates.txt": "calendar_dates",
    "routes.txt": "routes",
    "stops.txt": "stops",
    "stop_times.txt": "stop_times",
    "trips.txt": "trips",
    "shapes.txt": "shapes",
    "transfers.txt": "transfers",
}

GTFS_TABLES = frozenset(GTFS_FILES.values())

# ---------------------------------------------------------------------------
# Canonical columns (everything else in a feed file is dropped)
# ---------------------------------------------------------------------------

VALID_COLUMNS: dict[str, tuple[str, ...]] = {
    "agency": (
        "agency_id", "agency_name", "agency_url", "agency_timezone",
        "agency_lang", "agency_phone", "agency_fare_url", "agency_email",
    ),
    "calendar": (
        "service_id", "monday", "tuesday", "wednesday", "thursday",
        "friday", "saturday", "sunday", "start_date", "end_date",
    ),
    "calendar_dates": ("service_id", "date", "exception_type"),
    "routes": (
        "route_id", "agency_id", "route_short_name", "route_long_name",
        "route_desc", "route_type", "route_url", "route_color",
        "route_text_color", "route_sort_order",
    ),
    "stops": (
        "stop_id", "stop_code", "stop_name", "stop_desc", "stop_lat",
        "stop_lon", "zone_id", "stop_url", "location_type", "parent_station",
        "stop_timezone", "wheelchair_boarding", "level_id", "platform_code",
    ),
    "stop_times": (
        "trip_id", "arrival_time", "departure_time", "stop_id",
        "stop_sequence", "stop_headsign", "pickup_type", "drop_off_type",
        "shape_dist_traveled", "timepoint",
    ),
    "trips": (
        "route_id", "service_id", "trip_id", "trip_headsign",
        "trip_short_name", "direction_id", "block_id", "shape_id",
        "wheelchair_accessible", "bikes_allowed",
    ),
    "shapes": (
        "shape_id", "shape_pt_lat", "shape_pt_lon", "shape_pt_sequence",
        "shape_dist_traveled",
    ),
    "transfers": ("from_stop_id", "to_stop_id", "transfer_type", "min_transfer_time"),
}

# Columns the loader itself writes next to the canonical GTFS columns.
SUB_SOURCE_COLUMNS = ("subnetwork_name", "subnetwork_metadata")
ORIGINAL_ID_COLUMNS: dict[str, str] = {
    "agency": "_original_agency_id",
    "routes": "_original_route_id",
}

# ---------------------------------------------------------------------------
# Coercion types
# ---------------------------------------------------------------------------

INTEGER_FIELDS: dict[str, frozenset[str]] = {
    "routes": frozenset({"route_type", "route_sort_order"}),
    "stops": frozenset({"location_type", "wheelchair_boarding"}),
    "stop_times": frozenset({"stop_sequence", "pickup_type", "drop_off_type", "timepoint"}),
    "trips": frozenset({"direction_id", "wheelchair_accessible", "bikes_allowed"}),
    "shapes": frozenset({"shape_pt_sequence"}),
    "transfers": frozenset({"transfer_type", "min_transfer_time"}),
    "calendar_dates": frozenset({"exception_type"}),
}

DECIMAL_FIELDS: dict[str, frozenset[str]] = {
    "stop_times": frozenset({"shape_dist_traveled"}),
    "shapes": frozenset({"shape_dist_traveled"}),
}

BOOLEAN_FIELDS: dict[str, frozenset[str]] = {
    "calendar": frozenset({
        "monday", "tuesday", "wednesday", "thursday",
        "friday", "saturday", "sunday",
    }),
}

COORDINATE_FIELDS = frozenset({"stop_lat", "stop_lon", "shape_pt_lat", "shape_pt_lon"})

# ---------------------------------------------------------------------------
# Natural keys (upsert conflict targets, tenant column first)
# ---------------------------------------------------------------------------

CONFLICT_COLUMNS: dict[str, tuple[str, ...]] = {
    "agency": (TENANT_COLUMN, "agency_id"),
    "calendar": (TENANT_COLUMN, "service_id"),
    "calendar_dates": (TENANT_COLUMN, "service_id", "date"),
    "routes": (TENANT_COLUMN, "route_id"),
    "stops": (TENANT_COLUMN, "stop_id"),
    "stop_times": (TENANT_COLUMN, "trip_id", "stop_sequence"),
    "trips": (TENANT_COLUMN, "trip_id"),
    "shapes": (TENANT_COLUMN, "shape_id", "shape_pt_sequence"),
    "transfers": (TENANT_COLUMN, "from_stop_id", "to_stop_id"),
    TENANT_TABLE: (TENANT_COLUMN,),
}

# ---------------------------------------------------------------------------
# Foreign keys enforced by the store (names match migrations/0002)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ForeignKey:
    name: str
    table: str
    columns: tuple[str, ...]
    ref_table: str
    ref_columns: tuple[str, ...]


FOREIGN_KEYS: tuple[ForeignKey, ...] = (
    ForeignKey("routes_agency_id_network_id_fkey", "routes",
               ("agency_id", TENANT_COLUMN), "agency", ("agency_id", TENANT_COLUMN)),
    ForeignKey("trips_route_id_network_id_fkey", "trips",
               ("route_id", TENANT_COLUMN), "routes", ("route_id", TENANT_COLUMN)),
    ForeignKey("stop_times_trip_id_network_id_fkey", "stop_times",
               ("trip_id", TENANT_COLUMN), "trips", ("trip_id", TENANT_COLUMN)),
    ForeignKey("stop_times_stop_id_network_id_fkey", "stop_times",
               ("stop_id", TENANT_COLUMN), "stops", ("stop_id", TENANT_COLUMN)),
) + tuple(
    ForeignKey(f"{table}_network_id_fkey", table, (TENANT_COLUMN,),
               TENANT_TABLE, (TENANT_COLUMN,))
    for table in (
        "agency", "calendar", "calendar_dates", "routes", "stops",
        "stop_times", "trips", "shapes", "transfers",
        "favorite_lines", "favorite_stops", "favorite_networks",
    )
)

AGENCY_FOREIGN_KEY = FOREIGN_KEYS[0].name

# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

IMPORT_ORDER: tuple[str, ...] = (
    "agency", "stops", "calendar", "routes", "shapes",
    "trips", "stop_times", "calendar_dates", "transfers",
)

DELETION_ORDER: tuple[str, ...] = (
    "stop_times", "transfers", "trips", "stops", "shapes",
    "routes", "calendar_dates", "calendar", "agency",
)

FAVORITE_TABLES: tuple[str, ...] = ("favorite_lines", "favorite_stops", "favorite_networks")

# Ordering column per table for paged deletion; None means unordered.
ORDER_COLUMNS: dict[str, str | None] = {
    "stop_times": "stop_sequence",
    "trips": "trip_id",
    "stops": "stop_id",
    "routes": "route_id",
    "shapes": None,
    "calendar": "service_id",
    "calendar_dates": "date",
    "agency": "agency_id",
    "transfers": "from_stop_id",
}

# Tables whose ordering column cannot drive paged deletion; they are
# cleared with one unbatched delete once batching bottoms out.
SPECIALIZED_FALLBACK_TABLES = frozenset({"shapes"})

# Table deleted directly once more after the batched pass.
FINAL_RETRY_TABLE = "stops"

# Selecting a parent for deletion drags these dependents along.
DEPENDENT_TABLES: dict[str, tuple[str, ...]] = {
    "agency": (
        "routes", "trips", "stop_times", "calendar", "calendar_dates",
        "transfers", "shapes", "favorite_lines", "favorite_stops",
    ),
    "routes": ("trips", "stop_times", "favorite_lines"),
    "trips": ("stop_times", "shapes"),
    "stops": ("stop_times", "transfers", "favorite_stops"),
    "calendar": ("trips", "calendar_dates", "stop_times"),
}

# Master order for scoped deletions, favorites interleaved with their parents.
SCOPED_DELETION_ORDER: tuple[str, ...] = (
    "stop_times", "trips", "transfers", "calendar_dates", "shapes",
    "favorite_stops", "stops", "favorite_lines", "routes", "calendar",
    "agency", "favorite_networks",
)


def table_for_file(file_name: str) -> str | None:
    """Return the GTFS table for a feed file name (basename match), or None."""
    base = file_name.replace("\\", "/").rsplit("/", 1)[-1]
    return GTFS_FILES.get(base)


def file_for_table(table: str) -> str:
    return f"{table}.txt"
