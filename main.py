#!/usr/bin/env python3
"""
Main entry point for running database migrations.

Usage:
    python main.py migrate --database app_db            # Reconcile app_db
    python main.py migrate --database app_db --retry    # Re-run on transient faults
    python main.py status --database app_db             # Show what would change
    python main.py health --database app_db             # Connectivity check
"""

import argparse
import json
import sys
from typing import Optional

from stackmigrate.config import ConfigManager
from stackmigrate.database import DatabaseManager
from stackmigrate.errors import MigrationError
from stackmigrate.runner import MigrationRunner


def run_migrate(config_manager: ConfigManager, database_name: str, retry: bool) -> int:
    """Reconcile the database with its declared migrations."""
    print(f"🚀 Migrating database '{database_name}' ({config_manager.environment})...")
    settings = config_manager.get_migration_config(database_name)
    runner = MigrationRunner.from_config(database_name, config_manager, settings)

    try:
        if retry or settings.retry_enabled:
            result = runner.run_with_retry(
                max_attempts=settings.max_attempts,
                min_wait=settings.min_wait,
                max_wait=settings.max_wait,
            )
        else:
            result = runner.run()
    except MigrationError as e:
        print(f"❌ Migration failed: {e.message}")
        if e.remediation:
            print(f"   💡 {e.remediation}")
        return 1
    finally:
        runner.close()

    for migration_id in result.reverted:
        print(f"   ↩️  Reverted {migration_id}")
    for migration_id in result.applied:
        print(f"   ✅ Applied {migration_id}")
    print(
        f"🎉 Done: {len(result.reverted)} reverted, {len(result.applied)} applied, "
        f"{len(result.kept)} unchanged"
    )
    return 0


def run_status(config_manager: ConfigManager, database_name: str) -> int:
    """Print the pending and to-be-reverted migrations."""
    runner = MigrationRunner.from_config(database_name, config_manager)
    try:
        status = runner.status()
    finally:
        runner.close()

    print(json.dumps(status, indent=2))
    return 1 if status["error"] else 0


def run_health(config_manager: ConfigManager, database_name: str) -> int:
    """Print the database health check."""
    settings = config_manager.get_migration_config(database_name)
    with DatabaseManager(database_name, config_manager) as db_manager:
        health = db_manager.health_check(settings.changelog_table)

    print(json.dumps(health, indent=2))
    return 0 if health["status"] != "unhealthy" else 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the migration commands."""
    parser = argparse.ArgumentParser(description="Database migration runner")
    parser.add_argument(
        "command", choices=["migrate", "status", "health"], help="Command to run"
    )
    parser.add_argument(
        "--database", "-d", required=True, help="Name of the database configuration"
    )
    parser.add_argument(
        "--environment", "-e", help="Configuration environment (default: detected)"
    )
    parser.add_argument(
        "--retry",
        action="store_true",
        help="Re-run the migration after transient storage faults",
    )
    args = parser.parse_args(argv)

    try:
        config_manager = ConfigManager(args.environment)

        if args.command == "migrate":
            return run_migrate(config_manager, args.database, args.retry)
        elif args.command == "status":
            return run_status(config_manager, args.database)
        else:
            return run_health(config_manager, args.database)
    except (ValueError, RuntimeError) as e:
        print(f"❌ Configuration error: {e}")
        return 1
    except Exception as e:
        print(f"❌ Error: {type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
