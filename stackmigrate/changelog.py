"""
Changelog storage for applied migrations.

This module provides the ChangelogStore class, the durable record of which
migrations have been applied to a database. Each apply or revert runs the
migration's script and the matching changelog insert or delete inside one
SQLAlchemy transaction, so a changelog row exists exactly when its script
has been committed.
"""

import re
import threading
from datetime import UTC, datetime, timedelta
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    delete,
    func,
    insert,
    inspect,
    select,
)
from sqlalchemy.dialects import mssql
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from stackmigrate.errors import ExecutionError, MigrationCancelledError, StorageError
from stackmigrate.log import get_logger
from stackmigrate.models import MAX_ID_LENGTH, ChangelogEntry, Migration

DEFAULT_TABLE_NAME = "changelog"

# Table names are interpolated into DDL, so only plain identifiers are allowed
_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def build_changelog_table(
    table_name: str = DEFAULT_TABLE_NAME, metadata: Optional[MetaData] = None
) -> Table:
    """
    Describe the changelog relation with SQLAlchemy Core.

    Column names are lower case so that tables created with mixed-case
    names (folded by PostgreSQL, case-insensitive in SQLite) stay readable.

    Args:
        table_name: Name of the changelog table
        metadata: MetaData to attach the table to (a fresh one if None)

    Returns:
        Table object for the changelog

    Raises:
        ValueError: If table_name is not a plain SQL identifier
    """
    if not table_name or not _TABLE_NAME_PATTERN.match(table_name):
        raise ValueError(
            f"Invalid changelog table name '{table_name}': "
            "must be a plain SQL identifier"
        )

    return Table(
        table_name,
        metadata if metadata is not None else MetaData(),
        Column("id", String(MAX_ID_LENGTH), primary_key=True),
        Column("checksum", String(255), nullable=False),
        Column(
            "installedat",
            DateTime().with_variant(mssql.DATETIME2(), "mssql"),
            nullable=False,
            server_default=func.current_timestamp(),
        ),
        Column("revertscript", Text, nullable=True),
    )


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


class ChangelogStore:
    """
    Durable, transactional bookkeeping of applied migrations.

    Reads return entries newest first. apply_migration and revert_migration
    each run in their own transaction and roll back completely on any
    failure, including an observed cancellation signal.
    """

    def __init__(
        self,
        engine: Engine,
        table_name: str = DEFAULT_TABLE_NAME,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the store.

        Args:
            engine: SQLAlchemy engine of the target database
            table_name: Name of the changelog table
            cancel_event: Optional event; when set, the in-flight transaction
                          is rolled back and MigrationCancelledError raised

        Raises:
            ValueError: If engine is None or table_name is invalid
        """
        if engine is None:
            raise ValueError("engine must be a SQLAlchemy Engine")

        self.engine = engine
        self.table_name = table_name
        self.table = build_changelog_table(table_name)
        self.cancel_event = cancel_event
        self._latest_installed_at: Optional[datetime] = None
        self._logger = None

    @property
    def logger(self):
        """Get the logger instance, initializing if necessary."""
        if self._logger is None:
            self._logger = get_logger(f"ChangelogStore.{self.table_name}")
        return self._logger

    def ensure_schema(self) -> None:
        """
        Create the changelog table if it does not exist.

        Raises:
            StorageError: If the table cannot be inspected or created
        """
        try:
            with self.engine.begin() as conn:
                self.table.create(conn, checkfirst=True)
            self.logger.debug(f"Changelog table '{self.table_name}' is present")
        except SQLAlchemyError as e:
            error_msg = f"Failed to create changelog table '{self.table_name}': {e}"
            self.logger.error(error_msg)
            raise StorageError(error_msg, cause=e) from e

    def exists(self) -> bool:
        """
        Check whether the changelog table exists, without creating it.

        Raises:
            StorageError: If the database cannot be inspected
        """
        try:
            with self.engine.connect() as conn:
                return inspect(conn).has_table(self.table_name)
        except SQLAlchemyError as e:
            error_msg = f"Failed to inspect changelog table '{self.table_name}': {e}"
            self.logger.error(error_msg)
            raise StorageError(error_msg, cause=e) from e

    def list_applied(self) -> list[ChangelogEntry]:
        """
        Read every changelog entry, most recently applied first.

        Returns:
            List of ChangelogEntry ordered by installation time descending

        Raises:
            StorageError: If the changelog cannot be read
        """
        t = self.table
        stmt = select(t.c.id, t.c.checksum, t.c.installedat, t.c.revertscript).order_by(
            t.c.installedat.desc(), t.c.id.desc()
        )

        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        except SQLAlchemyError as e:
            error_msg = f"Failed to read changelog table '{self.table_name}': {e}"
            self.logger.error(error_msg)
            raise StorageError(error_msg, cause=e) from e

        entries = [
            ChangelogEntry(
                id=row.id,
                checksum=row.checksum,
                installed_at=_as_naive_utc(row.installedat),
                revert_script=row.revertscript,
            )
            for row in rows
        ]
        if entries and entries[0].installed_at is not None:
            self._observe_installed_at(entries[0].installed_at)

        self.logger.debug(
            f"Read {len(entries)} changelog entries from '{self.table_name}'"
        )
        return entries

    def apply_migration(self, migration: Migration) -> ChangelogEntry:
        """
        Run a migration's script and record it, atomically.

        Args:
            migration: Migration to apply

        Returns:
            The ChangelogEntry that was inserted

        Raises:
            ExecutionError: If the forward script fails
            StorageError: If the changelog insert or the commit fails
            MigrationCancelledError: If cancellation was requested
        """
        entry = ChangelogEntry(
            id=migration.id,
            checksum=migration.checksum,
            installed_at=self._next_installed_at(),
            revert_script=migration.revert_script,
        )

        self.logger.info(f"Applying migration '{migration.id}'")
        try:
            with self.engine.connect() as conn:
                with conn.begin():
                    self._check_cancelled(migration.id)
                    self._execute_script(conn, migration.id, migration.script, "apply")

                    try:
                        conn.execute(
                            insert(self.table).values(
                                id=entry.id,
                                checksum=entry.checksum,
                                installedat=entry.installed_at,
                                revertscript=entry.revert_script,
                            )
                        )
                    except SQLAlchemyError as e:
                        error_msg = (
                            f"Failed to insert migration '{migration.id}' into "
                            f"changelog '{self.table_name}': {e}"
                        )
                        self.logger.error(error_msg)
                        raise StorageError(
                            error_msg, migration_id=migration.id, cause=e
                        ) from e

                    self._check_cancelled(migration.id)
        except SQLAlchemyError as e:
            error_msg = f"Transaction for migration '{migration.id}' failed: {e}"
            self.logger.error(error_msg)
            raise StorageError(error_msg, migration_id=migration.id, cause=e) from e

        self._observe_installed_at(entry.installed_at)
        self.logger.info(f"Applied migration '{migration.id}'")
        return entry

    def revert_migration(self, entry: ChangelogEntry) -> None:
        """
        Run an entry's recorded revert script and delete its row, atomically.

        Args:
            entry: Changelog entry to revert

        Raises:
            ExecutionError: If the revert script is missing or fails
            StorageError: If the row delete or the commit fails
            MigrationCancelledError: If cancellation was requested
        """
        if not entry.revert_script or not entry.revert_script.strip():
            error_msg = f"Migration '{entry.id}' has no revert script recorded"
            self.logger.error(error_msg)
            raise ExecutionError(error_msg, migration_id=entry.id, direction="revert")

        self.logger.info(f"Reverting migration '{entry.id}'")
        try:
            with self.engine.connect() as conn:
                with conn.begin():
                    self._check_cancelled(entry.id)
                    self._execute_script(conn, entry.id, entry.revert_script, "revert")

                    try:
                        result = conn.execute(
                            delete(self.table).where(self.table.c.id == entry.id)
                        )
                    except SQLAlchemyError as e:
                        error_msg = (
                            f"Failed to delete migration '{entry.id}' from "
                            f"changelog '{self.table_name}': {e}"
                        )
                        self.logger.error(error_msg)
                        raise StorageError(
                            error_msg, migration_id=entry.id, cause=e
                        ) from e

                    if result.rowcount != 1:
                        error_msg = (
                            f"Changelog '{self.table_name}' has no row for "
                            f"migration '{entry.id}'"
                        )
                        self.logger.error(error_msg)
                        raise StorageError(error_msg, migration_id=entry.id)

                    self._check_cancelled(entry.id)
        except SQLAlchemyError as e:
            error_msg = f"Transaction for reverting '{entry.id}' failed: {e}"
            self.logger.error(error_msg)
            raise StorageError(error_msg, migration_id=entry.id, cause=e) from e

        self.logger.info(f"Reverted migration '{entry.id}'")

    def _execute_script(
        self, conn: Connection, migration_id: str, script: str, direction: str
    ) -> None:
        # No parameter collection reaches the cursor, so psycopg2 leaves '%' alone
        try:
            conn.exec_driver_sql(script, execution_options={"no_parameters": True})
        except (SQLAlchemyError, TypeError, ValueError, IndexError) as e:
            error_msg = f"Failed to execute {direction} script of '{migration_id}': {e}"
            self.logger.error(error_msg)
            raise ExecutionError(
                error_msg, migration_id=migration_id, direction=direction, cause=e
            ) from e

    def _check_cancelled(self, migration_id: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            self.logger.warning(
                f"Cancellation requested, rolling back migration '{migration_id}'"
            )
            raise MigrationCancelledError(migration_id)

    def _next_installed_at(self) -> datetime:
        # Strictly after every entry seen so far, whatever the wall clock says
        now = datetime.now(UTC).replace(tzinfo=None)
        if self._latest_installed_at is not None and now <= self._latest_installed_at:
            now = self._latest_installed_at + timedelta(microseconds=1)
        return now

    def _observe_installed_at(self, installed_at: datetime) -> None:
        if self._latest_installed_at is None or installed_at > self._latest_installed_at:
            self._latest_installed_at = installed_at
