"""
Database management module for migration targets.

This module provides the DatabaseManager class that builds the SQLAlchemy
engine for a configured database, reports its health, and releases its
connections, plus the tenacity retry helpers used to re-run migrations
after transient connection faults.
"""

import time
from datetime import UTC, datetime
from typing import Any, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as SQLTimeoutError
from sqlalchemy.pool import QueuePool
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from stackmigrate.changelog import DEFAULT_TABLE_NAME
from stackmigrate.config import ConfigManager
from stackmigrate.errors import StorageError
from stackmigrate.log import get_logger

SUPPORTED_DATABASE_TYPES = ["postgresql", "sqlserver", "sqlite"]


def _is_transient_error(exception: Exception) -> bool:
    """
    Determine if an exception represents a transient error that should trigger retry.

    Only storage faults qualify: script failures, checksum drift and
    ordering violations fail identically on every attempt.

    Args:
        exception: The exception to classify

    Returns:
        True if the error is transient and should trigger retry, False otherwise
    """
    if isinstance(exception, StorageError):
        if exception.transient:
            return True
        cause = exception.cause
    elif isinstance(
        exception, (DisconnectionError, OperationalError, InterfaceError, SQLTimeoutError)
    ):
        return True
    else:
        return False

    if cause is None:
        return False

    error_message = str(cause).lower()
    transient_indicators = [
        "connection refused",
        "connection reset",
        "connection timeout",
        "network error",
        "temporary failure",
        "server closed the connection",
        "connection lost",
        "pool limit exceeded",
        "connection pool exhausted",
        "database is starting up",
        "database is shutting down",
        "too many connections",
        "connection aborted",
        "broken pipe",
    ]

    return any(indicator in error_message for indicator in transient_indicators)


def _create_retry_decorator(
    max_attempts: int = 2,
    min_wait: float = 2.0,
    max_wait: float = 15.0,
    multiplier: float = 2.0,
):
    """
    Create a retry decorator with exponential backoff for migration runs.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries in seconds
        max_wait: Maximum wait time between retries in seconds
        multiplier: Exponential backoff multiplier

    Returns:
        Configured retry decorator
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception(_is_transient_error),
        reraise=True,
    )


def enable_sqlite_transactional_ddl(engine: Engine) -> Engine:
    """
    Make DDL on a SQLite engine part of the surrounding transaction.

    pysqlite only opens transactions before DML, so a CREATE TABLE in a
    migration script would commit on its own. Driver-level transaction
    handling is switched off and BEGIN is emitted explicitly instead.

    Args:
        engine: SQLite engine to configure

    Returns:
        The same engine
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


class DatabaseManager:
    """
    Database manager for a migration target.

    Provides engine construction from configuration, health monitoring and
    resource cleanup for a single named database.
    """

    def __init__(self, database_name: str, config_manager: Optional[ConfigManager] = None):
        """
        Initialize DatabaseManager for a specific database.

        Args:
            database_name: Name of the database configuration to load
            config_manager: ConfigManager to read settings from (created on
                            first engine access if None)

        Raises:
            ValueError: If database_name is empty or None
        """
        if (
            not database_name
            or not isinstance(database_name, str)
            or not database_name.strip()
        ):
            raise ValueError("database_name must be a non-empty string")

        self.database_name = database_name
        self.engine = None
        self.database_type = None
        self._logger = None
        self._config_manager = config_manager

        self._initialize_logger()

    def _initialize_logger(self):
        """Initialize logger with Prefect integration and fallback."""
        if self._logger is not None:
            return

        self._logger = get_logger(f"DatabaseManager.{self.database_name}")
        self._logger.info(f"DatabaseManager initialized for '{self.database_name}'")

    @property
    def logger(self):
        """Get the logger instance, initializing if necessary."""
        if self._logger is None:
            self._initialize_logger()
        return self._logger

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager()
        return self._config_manager

    @property
    def db_engine(self) -> Engine:
        """Get the SQLAlchemy engine, initializing if necessary."""
        if self.engine is None:
            self._initialize_engine()
        return self.engine

    def _initialize_engine(self):
        """
        Initialize SQLAlchemy engine with configuration from ConfigManager.

        Raises:
            RuntimeError: If configuration is missing or invalid, or engine
                          creation fails
        """
        if self.engine is not None:
            return

        try:
            config = self.config_manager

            db_type = config.get_variable(f"{self.database_name}_type")
            connection_string = config.get_secret(
                f"{self.database_name}_connection_string"
            )

            if not db_type:
                raise ValueError(
                    f"Database type not configured for '{self.database_name}'. "
                    f"Please set {config.environment.upper()}_GLOBAL_"
                    f"{self.database_name.upper()}_TYPE in your environment "
                    f"configuration."
                )

            if not connection_string:
                raise ValueError(
                    f"Connection string not configured for '{self.database_name}'. "
                    f"Please set {config.environment.upper()}_GLOBAL_"
                    f"{self.database_name.upper()}_CONNECTION_STRING in your "
                    f"environment configuration."
                )

            db_type = db_type.lower()
            if db_type not in SUPPORTED_DATABASE_TYPES:
                raise ValueError(
                    f"Unsupported database type '{db_type}' for "
                    f"'{self.database_name}'. "
                    f"Supported types: {', '.join(SUPPORTED_DATABASE_TYPES)}"
                )

            if db_type == "sqlite":
                engine = enable_sqlite_transactional_ddl(
                    create_engine(connection_string, echo=False)
                )
                pool_info = "default pool"
            else:
                pool_size = int(
                    config.get_variable(f"{self.database_name}_pool_size", 5)
                )
                max_overflow = int(
                    config.get_variable(f"{self.database_name}_max_overflow", 10)
                )
                engine = create_engine(
                    connection_string,
                    poolclass=QueuePool,
                    pool_size=pool_size,
                    max_overflow=max_overflow,
                    pool_pre_ping=True,
                    echo=False,
                )
                pool_info = f"pool_size: {pool_size}, max_overflow: {max_overflow}"

            self.engine = engine
            self.database_type = db_type

            self.logger.info(
                f"Created SQLAlchemy engine for '{self.database_name}' "
                f"(type: {db_type}, {pool_info})"
            )

        except Exception as e:
            error_msg = (
                f"Failed to initialize engine for database '{self.database_name}': {e}"
            )
            self.logger.error(error_msg)
            raise RuntimeError(error_msg) from e

    def health_check(self, changelog_table: str = DEFAULT_TABLE_NAME) -> dict[str, Any]:
        """
        Perform database health check including connectivity and changelog presence.

        Returns:
            Dictionary containing:
                - database_name: Name of the database
                - status: Overall health status (healthy/degraded/unhealthy)
                - connection: Boolean indicating connection success
                - query_test: Boolean indicating basic query test success
                - changelog_present: Whether the changelog table exists
                - response_time_ms: Query response time in milliseconds
                - timestamp: ISO timestamp of health check
                - error: Error message if health check failed
        """
        start_time = time.time()

        health_status = {
            "database_name": self.database_name,
            "status": "unhealthy",
            "connection": False,
            "query_test": False,
            "changelog_present": None,
            "response_time_ms": None,
            "timestamp": datetime.now(UTC).isoformat(),
            "error": None,
        }

        try:
            with self.db_engine.connect() as conn:
                health_status["connection"] = True

                query_start = time.time()
                rows = conn.execute(text("SELECT 1 AS health_check")).fetchall()
                query_end = time.time()

                if rows:
                    health_status["query_test"] = True
                    health_status["response_time_ms"] = round(
                        (query_end - query_start) * 1000, 2
                    )
                else:
                    health_status["error"] = "Query test returned no results"

                health_status["changelog_present"] = inspect(conn).has_table(
                    changelog_table
                )

        except Exception as e:
            health_status["error"] = f"Connection or query test failed: {e}"
            self.logger.error(
                f"Health check failed for database '{self.database_name}': {e}"
            )

        if health_status["connection"] and health_status["query_test"]:
            response_time = health_status["response_time_ms"] or 0
            health_status["status"] = "degraded" if response_time > 5000 else "healthy"
        elif health_status["connection"]:
            health_status["status"] = "degraded"

        self.logger.debug(
            f"Health check completed for database '{self.database_name}' "
            f"in {round((time.time() - start_time) * 1000, 2)}ms, "
            f"status: {health_status['status']}"
        )

        return health_status

    def __enter__(self) -> "DatabaseManager":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit disposing of the engine's connections."""
        if exc_type is not None:
            self.logger.error(
                f"Exception occurred in DatabaseManager context for "
                f"'{self.database_name}': {exc_type.__name__}: {exc_val}"
            )

        if self.engine is not None:
            self.logger.debug(f"Disposing engine for database '{self.database_name}'")
            self.engine.dispose()
            self.engine = None
