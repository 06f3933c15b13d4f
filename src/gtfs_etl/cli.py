"""gtfs_etl.cli

Unified CLI entrypoint for GTFS tenant loading and deletion.

Modes (--mode):
  import         load a GTFS feed (directory, .zip or URL) into a tenant (default)
  delete_tenant  delete every row of a tenant, then the tenant record
  delete_tables  clear selected tables (plus dependents) for a tenant
  status         row count per GTFS table and the files still missing

Usage (import):
    python -m gtfs_etl.cli \\
        --mode import \\
        --db-dsn "$DB_DSN" \\
        --tenant-id "demo" \\
        --tenant-name "Demo Transit" \\
        --feed-path "feeds/demo_gtfs.zip"

Usage (import a sub-source into an existing tenant):
    python -m gtfs_etl.cli \\
        --mode import \\
        --db-dsn "$DB_DSN" \\
        --tenant-id "demo" \\
        --sub-source-name "Night Bus" \\
        --realtime-type "gtfs-rt" \\
        --realtime-url "https://example.org/rt" \\
        --realtime-api-key-env DEMO_RT_KEY \\
        --feed-url "https://example.org/night_gtfs.zip" \\
        --upload-mode incremental

Usage (delete_tables):
    python -m gtfs_etl.cli \\
        --mode delete_tables \\
        --db-dsn "$DB_DSN" \\
        --tenant-id "demo" \\
        --tables routes,stops \\
        --keep-tenant-record
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable

import click

from gtfs_etl.deletion import (
    DeletionProgress,
    DeletionReport,
    build_deletion_report,
    delete_tenant,
    run_table_deletion,
)
from gtfs_etl.feed_reader import FeedDownloadError, FeedParseError, download_feed, load_feed
from gtfs_etl.gateway import PostgresGateway, StoreError, StoreGateway
from gtfs_etl.importer import UPLOAD_MODES, build_import_report, run_import
from gtfs_etl.loader_config import (
    DEFAULT_CONFIG_PATH,
    LoaderConfig,
    LoaderConfigError,
    load_loader_config,
)
from gtfs_etl.shared import Checkpoint, TenantConfig, write_run_report
from gtfs_etl.tenants import (
    UnknownTenantError,
    build_status_report,
    ensure_tenant,
    missing_files,
    table_status,
)

MODES = ("import", "delete_tenant", "delete_tables", "status")


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_import_flags(
    feed_path: str | None,
    feed_url: str | None,
    run_id: str,
) -> None:
    if bool(feed_path) == bool(feed_url):
        _fatal(run_id, "import mode requires exactly one of: --feed-path, --feed-url")


def _validate_delete_tables_flags(tables: str | None, run_id: str) -> None:
    if not tables:
        _fatal(run_id, "delete_tables mode requires: --tables")


def _deletion_progress_printer(run_id: str) -> Callable[[DeletionProgress], None]:
    """Echo one line each time the deletion moves to a new phase or table."""
    last: list[tuple[str, str | None]] = []

    def on_progress(p: DeletionProgress) -> None:
        key = (p.phase, p.current_table)
        if last and last[-1] == key:
            return
        last.append(key)
        click.echo(
            f"[{run_id}] {p.percent:5.1f}% {p.phase} {p.current_table or ''} "
            f"rows_deleted={p.rows_deleted}"
        )

    return on_progress


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(MODES),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--tenant-id", required=True, help="Tenant (network) id")
@click.option("--tenant-name", default=None, help="[import] Name used when the tenant is created")
@click.option("--sub-source-name", default=None, help="[import] Sub-source being merged into the tenant")
@click.option("--realtime-type", default=None, help="[import] Sub-source real-time feed type")
@click.option("--realtime-url", default=None, help="[import] Sub-source real-time feed URL")
@click.option("--realtime-api-key-env", default=None, help="[import] Env var name holding the real-time API key")
@click.option("--feed-path", default=None, type=click.Path(exists=True), help="[import] GTFS directory, .zip or single .txt")
@click.option("--feed-url", default=None, help="[import] URL of a zipped GTFS feed")
@click.option(
    "--upload-mode",
    default="full",
    type=click.Choice(UPLOAD_MODES),
    show_default=True,
    help="[import] incremental requires an existing agency when agency.txt is absent",
)
@click.option("--checkpoint-path", default=None, type=click.Path(), help="[import] JSON checkpoint of completed feed files")
@click.option("--resume-from-checkpoint", is_flag=True, default=False, help="[import] Skip files recorded in the checkpoint")
@click.option("--tables", default=None, help="[delete_tables] Comma-separated table names")
@click.option(
    "--delete-tenant-record/--keep-tenant-record",
    default=None,
    help="[delete_*] Also delete the tenant record (default: yes for delete_tenant, no for delete_tables)",
)
@click.option(
    "--config-path",
    default=str(DEFAULT_CONFIG_PATH),
    show_default=True,
    type=click.Path(),
    help="Loader tuning YAML",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    tenant_id: str,
    tenant_name: str | None,
    sub_source_name: str | None,
    realtime_type: str | None,
    realtime_url: str | None,
    realtime_api_key_env: str | None,
    feed_path: str | None,
    feed_url: str | None,
    upload_mode: str,
    checkpoint_path: str | None,
    resume_from_checkpoint: bool,
    tables: str | None,
    delete_tenant_record: bool | None,
    config_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """GTFS multi-tenant loader CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_id}] Starting {mode} run for tenant {tenant_id}")

    try:
        config = load_loader_config(Path(config_path))
    except LoaderConfigError as exc:
        _fatal(run_id, f"invalid config {config_path}: {exc}")
        return

    gateway = PostgresGateway(
        db_dsn,
        statement_timeout_ms=config.statement_timeout_ms,
        max_rows_per_call=config.max_rows_per_call,
    )
    try:
        if mode == "import":
            _validate_import_flags(feed_path, feed_url, run_id)
            # Read the API key from env, never from CLI args
            api_key = None
            if realtime_api_key_env:
                api_key = os.environ.get(realtime_api_key_env) or None
                if api_key is None:
                    _fatal(run_id, f"env var {realtime_api_key_env} is not set")
            tenant = TenantConfig(
                tenant_id=tenant_id,
                tenant_name=tenant_name,
                sub_source_name=sub_source_name,
                realtime_type=realtime_type,
                realtime_url=realtime_url,
                realtime_api_key=api_key,
            )
            _run_import(
                run_id, started_at, gateway, config, tenant,
                feed_path=feed_path,
                feed_url=feed_url,
                upload_mode=upload_mode,
                checkpoint_path=checkpoint_path,
                resume_from_checkpoint=resume_from_checkpoint,
            )
        elif mode == "delete_tenant":
            report = delete_tenant(
                gateway, tenant_id,
                delete_tenant_record=True if delete_tenant_record is None else delete_tenant_record,
                config=config,
                on_progress=_deletion_progress_printer(run_id),
            )
            _finish_deletion(run_id, started_at, mode, report)
        elif mode == "delete_tables":
            _validate_delete_tables_flags(tables, run_id)
            selected = [t.strip() for t in tables.split(",") if t.strip()]  # type: ignore[union-attr]
            try:
                report = run_table_deletion(
                    gateway, tenant_id, selected,
                    delete_tenant_record=bool(delete_tenant_record),
                    config=config,
                    on_progress=_deletion_progress_printer(run_id),
                )
            except ValueError as exc:
                _fatal(run_id, str(exc))
                return
            _finish_deletion(run_id, started_at, mode, report)
        elif mode == "status":
            status = table_status(gateway, tenant_id)
            click.echo(build_status_report(tenant_id, status))
            report_path = write_run_report(
                run_id, started_at, mode,
                {
                    "tenant_id": tenant_id,
                    "tables": {t: s.count for t, s in status.items()},
                    "missing_files": missing_files(status),
                },
            )
            click.echo(f"[{run_id}] Run report: {report_path}")
    except StoreError as exc:
        _fatal(run_id, f"store error: {exc}")
    finally:
        gateway.close()


def _run_import(
    run_id: str,
    started_at: str,
    gateway: StoreGateway,
    config: LoaderConfig,
    tenant: TenantConfig,
    *,
    feed_path: str | None,
    feed_url: str | None,
    upload_mode: str,
    checkpoint_path: str | None,
    resume_from_checkpoint: bool,
) -> None:
    try:
        files = load_feed(Path(feed_path)) if feed_path else download_feed(feed_url)  # type: ignore[arg-type]
    except (FeedDownloadError, FeedParseError, OSError) as exc:
        _fatal(run_id, f"cannot load feed: {exc}")
        return
    if not files:
        _fatal(run_id, "no GTFS files found in feed")
        return
    click.echo(f"[{run_id}] Feed files: {', '.join(f.name for f in files)}")

    try:
        ensure_tenant(gateway, tenant, create=bool(tenant.tenant_name))
    except (UnknownTenantError, ValueError) as exc:
        _fatal(run_id, f"{exc} (pass --tenant-name to create it)")
        return

    cp_path = (
        Path(checkpoint_path) if checkpoint_path
        else Path(f"./artifacts/checkpoints/gtfs_{tenant.tenant_id}.json")
    )
    checkpoint = Checkpoint(cp_path, tenant.tenant_id)
    if resume_from_checkpoint:
        checkpoint.load()
        click.echo(f"[{run_id}] Checkpoint loaded: {len(checkpoint)} completed files")

    report = run_import(
        gateway, files, tenant,
        mode=upload_mode,
        config=config,
        checkpoint=checkpoint,
        on_progress=lambda pct, name: click.echo(f"[{run_id}] {pct:4.0%} {name}"),
    )
    click.echo(build_import_report(report))

    report_path = write_run_report(
        run_id, started_at, "import",
        {
            **report.to_dict(),
            "upload_mode": upload_mode,
            "feed": feed_path or feed_url,
            "checkpoint_path": str(cp_path),
        },
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if report.success:
        checkpoint.clear()
        return
    if report.cancelled:
        click.echo(f"[{run_id}] Import cancelled", err=True)
    else:
        click.echo(f"[{run_id}] Import failed: {report.error}", err=True)
    sys.exit(1)


def _finish_deletion(run_id: str, started_at: str, mode: str, report: DeletionReport) -> None:
    click.echo(build_deletion_report(report))
    report_path = write_run_report(run_id, started_at, mode, report.to_dict())
    click.echo(f"[{run_id}] Run report: {report_path}")
    if not report.complete:
        click.echo(
            f"[{run_id}] Deletion incomplete"
            + (f": {report.error}" if report.error else "; see blocked/failed tables"),
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
