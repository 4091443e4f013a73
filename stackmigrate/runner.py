"""
Migration run orchestration.

A run ensures the changelog table exists, loads the desired migrations,
reads the changelog and reconciles the two. Runs are fail-fast: the first
error moves the run to FAILED and is raised unchanged to the caller.
"""

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from sqlalchemy.engine import Engine

from stackmigrate.changelog import DEFAULT_TABLE_NAME, ChangelogStore
from stackmigrate.config import ConfigManager, MigrationSettings
from stackmigrate.database import DatabaseManager, _create_retry_decorator
from stackmigrate.errors import LoadError, MigrationError
from stackmigrate.loader import load_migrations
from stackmigrate.log import get_logger
from stackmigrate.models import DesiredMigrations, Migration
from stackmigrate.reconciliation import ReconciliationEngine


class RunState(Enum):
    """Stages of a migration run."""

    INIT = "init"
    SCHEMA_ENSURED = "schema_ensured"
    RECONCILED = "reconciled"
    CONVERGED = "converged"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MigrationRunResult:
    """Summary of a finished migration run."""

    state: RunState
    reverted: list[str] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["state"] = self.state.value
        return result


class MigrationRunner:
    """
    Drives one database through a migration run.

    The runner owns the run state machine; reconciliation itself is
    delegated to a fresh ReconciliationEngine for every run.
    """

    def __init__(
        self,
        store: ChangelogStore,
        load_desired: Callable[[], Iterable[Migration]],
        database_manager: Optional[DatabaseManager] = None,
    ):
        """
        Initialize the runner.

        Args:
            store: Changelog store of the target database
            load_desired: Zero-argument callable returning the desired
                          migrations in declared order; may raise LoadError
            database_manager: Manager owning the engine, if any
        """
        self.store = store
        self.load_desired = load_desired
        self.database_manager = database_manager
        self.settings: Optional[MigrationSettings] = None
        self.state = RunState.INIT
        self.logger = get_logger("MigrationRunner")

    @classmethod
    def from_config(
        cls,
        database_name: str,
        config_manager: Optional[ConfigManager] = None,
        settings: Optional[MigrationSettings] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "MigrationRunner":
        """
        Build a runner for a configured database.

        Args:
            database_name: Name of the database configuration
            config_manager: ConfigManager to read from (a new one if None)
            settings: Migration settings (read from config_manager if None)
            cancel_event: Optional cancellation signal for the run

        Returns:
            MigrationRunner reading migrations from the configured files
        """
        config_manager = config_manager or ConfigManager()
        settings = settings or config_manager.get_migration_config(database_name)
        database_manager = DatabaseManager(database_name, config_manager)

        store = ChangelogStore(
            database_manager.db_engine,
            table_name=settings.changelog_table,
            cancel_event=cancel_event,
        )
        runner = cls(
            store,
            lambda: load_migrations(settings.config_file, settings.script_dir),
            database_manager=database_manager,
        )
        runner.settings = settings
        return runner

    def _transition(self, state: RunState) -> None:
        self.logger.debug(f"Migration run: {self.state.value} -> {state.value}")
        self.state = state

    def _load(self) -> DesiredMigrations:
        try:
            return DesiredMigrations(self.load_desired())
        except ValueError as e:
            raise LoadError(str(e), cause=e) from e

    def run(self) -> MigrationRunResult:
        """
        Execute one migration run.

        Returns:
            MigrationRunResult with state DONE

        Raises:
            LoadError, StorageError, ExecutionError, ChecksumMismatchError,
            NonRevertibleOrderError, MigrationCancelledError: the first
            failure, unchanged
        """
        start_time = time.time()
        self.state = RunState.INIT
        self.logger.info(
            f"Starting migration run against changelog '{self.store.table_name}'"
        )

        try:
            self.store.ensure_schema()
            self._transition(RunState.SCHEMA_ENSURED)

            desired = self._load()
            applied = self.store.list_applied()

            outcome = ReconciliationEngine(self.store).reconcile(
                desired,
                applied,
                on_reverted=lambda _: self._transition(RunState.RECONCILED),
            )
            self._transition(RunState.CONVERGED)
        except MigrationError as e:
            self._transition(RunState.FAILED)
            self.logger.error(f"Migration run failed [{e.error_code}]: {e.message}")
            raise
        except Exception as e:
            self._transition(RunState.FAILED)
            self.logger.error(
                f"Migration run failed with unexpected error: {type(e).__name__}: {e}"
            )
            raise

        self._transition(RunState.DONE)
        result = MigrationRunResult(
            state=self.state,
            reverted=outcome.reverted,
            applied=outcome.applied,
            kept=outcome.kept,
            duration_seconds=round(time.time() - start_time, 3),
        )

        if not result.reverted and not result.applied:
            self.logger.info("Migration run completed, nothing to do")
        else:
            self.logger.info(
                f"Migration run completed: reverted {len(result.reverted)}, "
                f"applied {len(result.applied)} in {result.duration_seconds}s"
            )
        return result

    def run_with_retry(
        self,
        max_attempts: int = 2,
        min_wait: float = 2.0,
        max_wait: float = 15.0,
    ) -> MigrationRunResult:
        """
        Execute the run, repeating it after transient storage faults.

        Every attempt is a complete run, so migrations committed by a failed
        attempt are kept and skipped by the next one. Script failures,
        checksum drift and ordering violations are raised at once.

        Args:
            max_attempts: Maximum number of runs (default: 2)
            min_wait: Minimum wait time between runs in seconds (default: 2.0)
            max_wait: Maximum wait time between runs in seconds (default: 15.0)

        Returns:
            MigrationRunResult of the successful attempt
        """
        retry_decorator = _create_retry_decorator(
            max_attempts=max_attempts, min_wait=min_wait, max_wait=max_wait
        )

        @retry_decorator
        def _run_with_retry():
            self.logger.debug(
                f"Running migrations with retry (max_attempts: {max_attempts})"
            )
            return self.run()

        return _run_with_retry()

    def status(self) -> dict[str, Any]:
        """
        Report what a run would do, without changing anything.

        Returns:
            Dictionary containing:
                - changelog_table: Name of the changelog table
                - applied: Ids in the changelog, newest first
                - pending: Ids that would be applied, in declared order
                - to_revert: Ids that would be reverted, newest first
                - error: Error details if the run would fail, else None
        """
        status = {
            "changelog_table": self.store.table_name,
            "applied": [],
            "pending": [],
            "to_revert": [],
            "error": None,
        }

        try:
            desired = self._load()
            applied = self.store.list_applied() if self.store.exists() else []
            status["applied"] = [entry.id for entry in applied]

            plan = ReconciliationEngine(self.store).plan(desired, applied)
            status["pending"] = [migration.id for migration in plan.pending]
            status["to_revert"] = [entry.id for entry in plan.to_revert]
        except MigrationError as e:
            self.logger.warning(f"Migration status check found an error: {e.message}")
            status["error"] = e.to_dict()

        return status

    def close(self) -> None:
        """Release the database manager's engine, if the runner owns one."""
        if self.database_manager is not None:
            self.database_manager.__exit__(None, None, None)


def migrate(
    engine: Engine,
    migrations: Iterable[Migration],
    table_name: str = DEFAULT_TABLE_NAME,
    cancel_event: Optional[threading.Event] = None,
) -> MigrationRunResult:
    """
    Reconcile a database with an in-memory list of migrations.

    Args:
        engine: SQLAlchemy engine of the target database
        migrations: Desired migrations in declared order
        table_name: Name of the changelog table
        cancel_event: Optional cancellation signal

    Returns:
        MigrationRunResult of the run
    """
    migrations = list(migrations)
    store = ChangelogStore(engine, table_name=table_name, cancel_event=cancel_event)
    return MigrationRunner(store, lambda: migrations).run()
