"""
Migration Workflow - Reconcile a database with its declared migrations.
"""

from typing import Any, Optional

from prefect import flow

from stackmigrate.config import ConfigManager
from stackmigrate.log import get_logger
from stackmigrate.runner import MigrationRunner


@flow(
    name="database-migrations",
    description="Revert undeclared and apply pending migrations for one database",
)
def migration_flow(
    database_name: str,
    with_retry: Optional[bool] = None,
    environment: Optional[str] = None,
) -> dict[str, Any]:
    """
    Run one migration reconciliation for a configured database.

    Args:
        database_name: Name of the database configuration
        with_retry: Whether to repeat the run after transient storage faults
                    (overrides the {database_name}_migration_retry setting)
        environment: Configuration environment (detected if None)

    Returns:
        Dictionary containing the run summary
    """
    logger = get_logger("migration_flow")
    logger.info(f"Starting migration flow for database '{database_name}'")

    config_manager = ConfigManager(environment)
    settings = config_manager.get_migration_config(database_name)
    use_retry = with_retry if with_retry is not None else settings.retry_enabled

    logger.info(f"Environment: {config_manager.environment}")
    logger.info(f"Migration config: {settings.config_file}")
    logger.info(f"Changelog table: {settings.changelog_table}")
    logger.info(f"Retry on transient faults: {'Enabled' if use_retry else 'Disabled'}")

    runner = MigrationRunner.from_config(database_name, config_manager, settings)
    try:
        if use_retry:
            result = runner.run_with_retry(
                max_attempts=settings.max_attempts,
                min_wait=settings.min_wait,
                max_wait=settings.max_wait,
            )
        else:
            result = runner.run()
    finally:
        runner.close()

    summary = result.to_dict()
    summary["database_name"] = database_name
    logger.info(f"Migration flow completed for '{database_name}': {summary}")
    return summary
