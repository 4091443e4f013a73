"""
Stack Migrate

Reconciles a database's applied migrations with a declared, ordered set:
undeclared migrations are reverted newest first and pending ones applied
in declared order, with checksum drift detection and a transactional
changelog.
"""

from .changelog import ChangelogStore, build_changelog_table
from .errors import (
    ChecksumMismatchError,
    ExecutionError,
    LoadError,
    MigrationCancelledError,
    MigrationError,
    NonRevertibleOrderError,
    StorageError,
)
from .loader import load_migrations
from .models import ChangelogEntry, DesiredMigrations, Migration, compute_checksum
from .reconciliation import ReconciliationEngine, ReconciliationPlan
from .runner import MigrationRunner, MigrationRunResult, RunState, migrate

__version__ = "1.0.0"

__all__ = [
    "ChangelogStore",
    "build_changelog_table",
    "Migration",
    "ChangelogEntry",
    "DesiredMigrations",
    "compute_checksum",
    "load_migrations",
    "ReconciliationEngine",
    "ReconciliationPlan",
    "MigrationRunner",
    "MigrationRunResult",
    "RunState",
    "migrate",
    "MigrationError",
    "LoadError",
    "StorageError",
    "ExecutionError",
    "ChecksumMismatchError",
    "NonRevertibleOrderError",
    "MigrationCancelledError",
]
