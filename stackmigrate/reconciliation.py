"""
Reconciliation of the desired migration set against the changelog.

The changelog, newest entry first, is treated as a stack. Undesired entries
may only be popped from the top; everything from the newest still-desired
entry downwards must be desired and unchanged. Desired migrations that are
not on the stack are applied afterwards, in declared order.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Optional, Union

from stackmigrate.changelog import ChangelogStore
from stackmigrate.errors import (
    ChecksumMismatchError,
    ExecutionError,
    NonRevertibleOrderError,
)
from stackmigrate.log import get_logger
from stackmigrate.models import ChangelogEntry, DesiredMigrations, Migration


@dataclass(frozen=True)
class ReconciliationPlan:
    """What a reconciliation run will do, computed without touching the database."""

    to_revert: list[ChangelogEntry] = field(default_factory=list)
    kept: list[ChangelogEntry] = field(default_factory=list)
    pending: list[Migration] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.to_revert and not self.pending


@dataclass
class ReconciliationResult:
    """Identifiers touched by a completed reconciliation."""

    reverted: list[str] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)


def _as_desired(
    desired: Union[DesiredMigrations, Iterable[Migration]],
) -> DesiredMigrations:
    if isinstance(desired, DesiredMigrations):
        return desired
    return DesiredMigrations(desired)


class ReconciliationEngine:
    """
    Converges a database's applied-migration stack to the desired set.

    The engine holds no state between calls; construct one per run around
    the ChangelogStore of the target database.
    """

    def __init__(self, store: ChangelogStore):
        self.store = store
        self.logger = get_logger("ReconciliationEngine")

    def plan(
        self,
        desired: Union[DesiredMigrations, Iterable[Migration]],
        applied: list[ChangelogEntry],
    ) -> ReconciliationPlan:
        """
        Work out which entries to revert and which migrations to apply.

        Args:
            desired: Desired migrations in declared order
            applied: Changelog entries, most recently applied first

        Returns:
            ReconciliationPlan with reverts newest first and pending
            migrations in declared order

        Raises:
            ChecksumMismatchError: If a kept entry's checksum differs from
                                   its desired migration
            NonRevertibleOrderError: If an undesired entry lies beneath a
                                     still-desired one
            ExecutionError: If an entry to revert has no revert script
        """
        desired = _as_desired(desired)

        to_revert: list[ChangelogEntry] = []
        kept: list[ChangelogEntry] = []
        still_wanted_seen = False

        for entry in applied:
            migration = desired.get(entry.id)
            if migration is not None:
                if entry.checksum != migration.checksum:
                    raise ChecksumMismatchError(
                        entry.id,
                        file_checksum=migration.checksum,
                        db_checksum=entry.checksum,
                    )
                still_wanted_seen = True
                kept.append(entry)
            elif still_wanted_seen:
                raise NonRevertibleOrderError(entry.id)
            else:
                to_revert.append(entry)

        for entry in to_revert:
            if not entry.revert_script or not entry.revert_script.strip():
                raise ExecutionError(
                    f"Migration '{entry.id}' has no revert script recorded",
                    migration_id=entry.id,
                    direction="revert",
                )

        kept_ids = {entry.id for entry in kept}
        pending = [m for m in desired if m.id not in kept_ids]

        return ReconciliationPlan(to_revert=to_revert, kept=kept, pending=pending)

    def reconcile(
        self,
        desired: Union[DesiredMigrations, Iterable[Migration]],
        applied: list[ChangelogEntry],
        on_reverted: Optional[Callable[[ReconciliationResult], None]] = None,
    ) -> ReconciliationResult:
        """
        Revert undesired entries from the top of the stack, then apply pending ones.

        The plan is validated against the whole snapshot before anything is
        executed, so drift, an ordering violation or a missing revert script
        leaves the changelog untouched. Each revert and apply commits on its
        own; the first failure stops the run and earlier steps stay committed.

        Args:
            desired: Desired migrations in declared order
            applied: Changelog entries, most recently applied first
            on_reverted: Called with the partial result once every undesired
                         entry is reverted, before any pending migration runs

        Returns:
            ReconciliationResult listing reverted, applied and kept ids

        Raises:
            ChecksumMismatchError: On drift of a kept migration
            NonRevertibleOrderError: On an undesired entry below a desired one
            ExecutionError: If a script fails or is missing
            StorageError: If the changelog cannot be written
            MigrationCancelledError: If the run was cancelled
        """
        plan = self.plan(desired, applied)
        result = ReconciliationResult(kept=[entry.id for entry in plan.kept])

        if plan.is_noop:
            self.logger.info(
                f"Database is up to date ({len(plan.kept)} migrations applied)"
            )
        else:
            self.logger.info(
                f"Reconciling: {len(plan.to_revert)} to revert, "
                f"{len(plan.kept)} kept, {len(plan.pending)} to apply"
            )

        self.revert_undesired(plan, result)
        if on_reverted is not None:
            on_reverted(result)
        self.apply_pending(plan, result)
        return result

    def revert_undesired(
        self, plan: ReconciliationPlan, result: ReconciliationResult
    ) -> None:
        """Revert the plan's entries, newest first, recording each in result."""
        for entry in plan.to_revert:
            self.store.revert_migration(entry)
            result.reverted.append(entry.id)

    def apply_pending(
        self, plan: ReconciliationPlan, result: ReconciliationResult
    ) -> None:
        """Apply the plan's pending migrations in declared order, recording each in result."""
        for migration in plan.pending:
            self.store.apply_migration(migration)
            result.applied.append(migration.id)
