"""
Error Types and Exceptions

Defines the exception taxonomy raised by the migration system. Every error
names the offending migration (where one exists) and carries remediation
guidance for the operator.
"""

from typing import Any, Optional

from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as SQLTimeoutError


class MigrationError(Exception):
    """Base exception for migration system errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        migration_id: Optional[str] = None,
        remediation: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.migration_id = migration_id
        self.remediation = remediation or ""
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error_code": self.error_code,
            "error_type": self.__class__.__name__,
            "message": self.message,
            "migration_id": self.migration_id,
            "remediation": self.remediation,
            "cause": str(self.cause) if self.cause else None,
        }


class LoadError(MigrationError):
    """The desired migration set could not be read."""

    def __init__(
        self,
        message: str,
        migration_id: Optional[str] = None,
        path: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code="LOAD_ERROR",
            migration_id=migration_id,
            remediation="Check the migration config file and script directory",
            cause=cause,
        )
        self.path = path


class StorageError(MigrationError):
    """The changelog relation could not be read or written."""

    # Connection-level faults that may clear up if the whole run is repeated
    TRANSIENT_ERROR_TYPES = (
        DisconnectionError,
        OperationalError,
        InterfaceError,
        SQLTimeoutError,
    )

    def __init__(
        self,
        message: str,
        migration_id: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code="STORAGE_ERROR",
            migration_id=migration_id,
            remediation=(
                "Verify database connectivity and permissions on the changelog "
                "table, then re-run the migration"
            ),
            cause=cause,
        )

    @property
    def transient(self) -> bool:
        """Whether the underlying fault looks like a temporary connection problem."""
        return isinstance(self.cause, self.TRANSIENT_ERROR_TYPES)


class ExecutionError(MigrationError):
    """A forward or revert script failed against the target schema."""

    def __init__(
        self,
        message: str,
        migration_id: str,
        direction: str,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code="EXECUTION_ERROR",
            migration_id=migration_id,
            remediation=f"Fix the {direction} script of migration '{migration_id}'",
            cause=cause,
        )
        self.direction = direction


class ChecksumMismatchError(MigrationError):
    """A kept migration's source no longer matches what was applied."""

    def __init__(self, migration_id: str, file_checksum: str, db_checksum: str):
        super().__init__(
            message=(
                f"checksum mismatch for migration {migration_id}: "
                f"file: {file_checksum}, database: {db_checksum}"
            ),
            error_code="CHECKSUM_MISMATCH",
            migration_id=migration_id,
            remediation=(
                "Restore the original script content, or revert the migration "
                "manually and remove its changelog row"
            ),
        )
        self.file_checksum = file_checksum
        self.db_checksum = db_checksum

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["file_checksum"] = self.file_checksum
        result["db_checksum"] = self.db_checksum
        return result


class NonRevertibleOrderError(MigrationError):
    """An undesired migration lies beneath a still-desired one."""

    def __init__(self, migration_id: str):
        super().__init__(
            message=(
                f"migration {migration_id} is no longer declared but a more "
                f"recently applied migration is still declared; it cannot be reverted"
            ),
            error_code="NON_REVERTIBLE_ORDER",
            migration_id=migration_id,
            remediation=(
                "Also remove every migration applied after it from the config, "
                "or restore it to the config"
            ),
        )


class MigrationCancelledError(MigrationError):
    """The caller's cancellation signal was observed inside a transaction."""

    def __init__(self, migration_id: Optional[str] = None):
        super().__init__(
            message=(
                f"migration run cancelled while processing {migration_id}"
                if migration_id
                else "migration run cancelled"
            ),
            error_code="CANCELLED",
            migration_id=migration_id,
            remediation="Re-run the migration; committed steps are kept",
        )
