#!/usr/bin/env python3
"""
Scheduled synchronization script for change-tracked tables.

This script runs one change-tracking cycle per configured table:
- Registers (and initially loads) tables seen for the first time
- Pulls net changes since each table's watermark into its reporting table
- Retries retryable failures with exponential backoff
- Logs and prints per-table statistics

Designed to be run on a schedule (e.g., via cron or Airflow).

Usage:
    python scripts/scheduled_sync.py [--config CONFIG_PATH] [--table NAME] [--full-resync]
"""

import argparse
import sys
from datetime import datetime

import structlog

from ctsync.errors import CycleFailedError, SyncError
from ctsync.models.config import AppConfig
from ctsync.providers import get_orchestrator
from ctsync.sync.models import CycleReport
from ctsync.sync.orchestrator import SyncOrchestrator
from ctsync.utils.config_loader import ConfigLoader, ConfigurationError
from ctsync.utils.logging_config import configure_logging_from_config
from ctsync.utils.retry import exponential_backoff_retry, is_retryable

log = structlog.stdlib.get_logger()


def sync_table(
    orchestrator: SyncOrchestrator, config: AppConfig, table_name: str, full_resync: bool
) -> CycleReport:
    """Run one cycle (or a full resync) for a table, retrying retryable failures."""

    @exponential_backoff_retry(
        max_retries=config.sync.max_retries,
        base_delay=config.sync.retry_base_delay,
        max_delay=config.sync.retry_max_delay,
        exceptions=(SyncError,),
        retry_if=is_retryable,
    )
    def attempt() -> CycleReport:
        orchestrator.register_table(table_name, initial_load=True)
        if full_resync:
            return orchestrator.full_resync(table_name)
        return orchestrator.run_cycle(table_name)

    return attempt()


def perform_sync(
    config_path: str | None = None, table: str | None = None, full_resync: bool = False
) -> dict:
    """
    Perform synchronization for the configured tables.

    Args:
        config_path: Optional path to configuration file
        table: Optional single table to synchronize
        full_resync: If True, rebuild targets instead of applying changes

    Returns:
        Dictionary with sync statistics
    """
    start_time = datetime.now()

    try:
        config = ConfigLoader().load_config(config_path)
    except ConfigurationError as e:
        log.error("Synchronization failed", error=str(e))
        return {"success": False, "error": str(e), "tables": []}

    configure_logging_from_config(config.logging)

    log.info(
        "Starting synchronization",
        sync_type="full_resync" if full_resync else "incremental",
        timestamp=start_time.isoformat(),
    )

    table_names = config.table_names
    if table is not None:
        if table not in table_names:
            error = f"Table {table} is not configured; configured tables: {table_names}"
            log.error("Synchronization failed", error=error)
            return {"success": False, "error": error, "tables": []}
        table_names = [table]

    try:
        orchestrator = get_orchestrator(config)
    except (ValueError, RuntimeError) as e:
        log.error("Synchronization failed", error=str(e), error_type=type(e).__name__)
        return {"success": False, "error": str(e), "tables": []}

    results = []

    for table_name in table_names:
        try:
            report = sync_table(orchestrator, config, table_name, full_resync)
        except CycleFailedError as e:
            report = e.report
            results.append(
                {
                    "table": table_name,
                    "success": False,
                    "from_version": report.from_version,
                    "to_version": report.to_version,
                    "failed_stage": report.failed_stage.value if report.failed_stage else None,
                    "error_kind": report.error_kind,
                    "error": report.error,
                    "requires_full_resync": getattr(e.cause, "requires_full_resync", False),
                }
            )
            continue
        except SyncError as e:
            results.append(
                {
                    "table": table_name,
                    "success": False,
                    "error_kind": type(e).__name__,
                    "error": str(e),
                }
            )
            continue

        results.append(
            {
                "table": table_name,
                "success": True,
                "from_version": report.from_version,
                "to_version": report.to_version,
                "inserted": report.inserted,
                "updated": report.updated,
                "deleted": report.deleted,
                "unchanged": report.unchanged,
                "demoted": report.rows_demoted,
            }
        )

    end_time = datetime.now()
    stats = {
        "success": all(result["success"] for result in results),
        "sync_type": "full_resync" if full_resync else "incremental",
        "tables": results,
        "start_time": start_time.isoformat(),
        "end_time": end_time.isoformat(),
        "duration_seconds": (end_time - start_time).total_seconds(),
    }

    if stats["success"]:
        log.info("Synchronization completed successfully", **stats)
    else:
        log.error("Synchronization finished with failures", **stats)

    return stats


def main():
    """Main entry point for scheduled sync script."""
    parser = argparse.ArgumentParser(
        description="Scheduled change-tracking synchronization"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--table",
        type=str,
        help="Synchronize only this table",
        default=None,
    )
    parser.add_argument(
        "--full-resync",
        action="store_true",
        help="Rebuild reporting tables from current source rows",
    )

    args = parser.parse_args()

    stats = perform_sync(config_path=args.config, table=args.table, full_resync=args.full_resync)

    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)

    if "error" in stats:
        print("Status: ✗ FAILED")
        print(f"Error: {stats['error']}")

    for result in stats.get("tables", []):
        print(f"\nTable: {result['table']}")
        if result["success"]:
            print("  Status: ✓ SUCCESS")
            print(f"  Versions: {result['from_version']} -> {result['to_version']}")
            print(f"  Inserted: {result['inserted']}")
            print(f"  Updated: {result['updated']}")
            print(f"  Deleted: {result['deleted']}")
        else:
            print("  Status: ✗ FAILED")
            if result.get("failed_stage"):
                print(f"  Stage: {result['failed_stage']}")
                print(f"  Versions attempted: {result['from_version']} -> {result['to_version']}")
            print(f"  Error: {result['error_kind']}: {result['error']}")
            if result.get("requires_full_resync"):
                print("  Action: run again with --full-resync")

    if "duration_seconds" in stats:
        print(f"\nDuration: {stats['duration_seconds']:.2f} seconds")
    print("=" * 60)

    sys.exit(0 if stats.get("success") else 1)


if __name__ == "__main__":
    main()
