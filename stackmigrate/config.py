"""
Configuration settings for the migration runner.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from prefect.blocks.system import Secret
from prefect.variables import Variable

from stackmigrate.changelog import DEFAULT_TABLE_NAME

# Base paths
PROJECT_ROOT = Path(__file__).parent.parent
ENVS_DIR = PROJECT_ROOT / "stackmigrate" / "envs"

ENVIRONMENT_VARIABLE = "STACKMIGRATE_ENVIRONMENT"
DEFAULT_ENVIRONMENT = "development"

# Migration defaults
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_MIN_WAIT = 2
DEFAULT_MAX_WAIT = 15


@dataclass(frozen=True)
class MigrationSettings:
    """Where a database's migrations live and how a run is retried."""

    database_name: str
    config_file: Path
    script_dir: Path
    changelog_table: str = DEFAULT_TABLE_NAME
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    min_wait: int = DEFAULT_MIN_WAIT
    max_wait: int = DEFAULT_MAX_WAIT
    retry_enabled: bool = False


class ConfigManager:
    """
    Configuration manager with .env file support.

    Configuration lookup hierarchy (most specific to least specific):
    1. Environment variables, after loading stackmigrate/envs/.env.{environment}
       and then an optional explicit env file (which overrides)
    2. Prefect: {environment}.global.{key} - Global in specific environment
    3. Prefect: global.{key} - Base global
    4. The caller's default
    """

    def __init__(
        self, environment: Optional[str] = None, env_file: Optional[Path] = None
    ):
        """
        Initialize the configuration manager.

        Args:
            environment: Environment name (e.g., 'development', 'staging', 'production')
                        If None, will be detected from STACKMIGRATE_ENVIRONMENT
            env_file: Optional extra .env file loaded on top of the global one
        """
        self.environment = environment or self._detect_environment()
        self.env_file = Path(env_file) if env_file else None

        self._load_env_files()

    def _detect_environment(self) -> str:
        """Detect current environment from environment variables."""
        return os.getenv(ENVIRONMENT_VARIABLE, DEFAULT_ENVIRONMENT)

    def _load_env_files(self):
        """Load .env files in hierarchical order."""
        global_env_file = ENVS_DIR / f".env.{self.environment}"
        if global_env_file.exists():
            load_dotenv(global_env_file)

        if self.env_file and self.env_file.exists():
            load_dotenv(self.env_file, override=True)

    def _env_key(self, key: str) -> str:
        return f"{self.environment.upper()}_GLOBAL_{key.upper()}"

    def get_secret(self, key: str, default: Any = None) -> Any:
        """
        Get secret with .env file support and hierarchical fallback.

        Args:
            key: Configuration key
            default: Default value if not found

        Returns:
            Secret value or default
        """
        env_value = os.getenv(self._env_key(key))
        if env_value is not None:
            return env_value

        block_key = key.replace("_", "-")
        for secret_name in (f"{self.environment}-global-{block_key}", f"global-{block_key}"):
            try:
                return Secret.load(secret_name).get()
            except ValueError:
                continue

        return default

    def get_variable(self, key: str, default: Any = None) -> Any:
        """
        Get variable with .env file support and hierarchical fallback.

        Args:
            key: Configuration key
            default: Default value if not found

        Returns:
            Variable value or default
        """
        env_value = os.getenv(self._env_key(key))
        if env_value is not None:
            return env_value

        for var_name in (f"{self.environment}_global_{key}", f"global_{key}"):
            try:
                value = Variable.get(var_name, default=None)
            except ValueError:
                continue
            if value is not None:
                return value

        return default

    def get_config(self, key: str, default: Any = None, is_secret: bool = False) -> Any:
        """Get configuration value (secret or variable)."""
        if is_secret:
            return self.get_secret(key, default)
        return self.get_variable(key, default)

    def get_migration_config(self, database_name: str) -> MigrationSettings:
        """
        Get migration settings for a database with defaults and validation.

        Relative paths are resolved against PROJECT_ROOT.

        Args:
            database_name: Name of the database configuration

        Returns:
            MigrationSettings for the database

        Raises:
            ValueError: If a required key is missing or a value is invalid
        """
        config_file = self.get_variable(f"{database_name}_migration_config_file")
        script_dir = self.get_variable(f"{database_name}_migration_script_dir")

        if not config_file:
            raise ValueError(
                f"Migration config file not configured for '{database_name}'. "
                f"Please set {self._env_key(f'{database_name}_migration_config_file')}"
            )
        if not script_dir:
            raise ValueError(
                f"Migration script directory not configured for '{database_name}'. "
                f"Please set {self._env_key(f'{database_name}_migration_script_dir')}"
            )

        settings = MigrationSettings(
            database_name=database_name,
            config_file=self._resolve_path(config_file),
            script_dir=self._resolve_path(script_dir),
            changelog_table=self.get_variable(
                f"{database_name}_changelog_table", DEFAULT_TABLE_NAME
            ),
            max_attempts=self._get_int_config(
                f"{database_name}_migration_max_attempts", DEFAULT_MAX_ATTEMPTS
            ),
            min_wait=self._get_int_config(
                f"{database_name}_migration_min_wait", DEFAULT_MIN_WAIT
            ),
            max_wait=self._get_int_config(
                f"{database_name}_migration_max_wait", DEFAULT_MAX_WAIT
            ),
            retry_enabled=self._get_bool_config(
                f"{database_name}_migration_retry", False
            ),
        )

        self._validate_migration_config(settings)
        return settings

    def _resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else PROJECT_ROOT / path

    def _get_int_config(self, key: str, default: int) -> int:
        """
        Get integer configuration value with validation.

        Args:
            key: Configuration key
            default: Default integer value

        Returns:
            Integer configuration value

        Raises:
            ValueError: If value cannot be converted to integer or is invalid
        """
        value = self.get_config(key, default)

        if value is None:
            return default

        if isinstance(value, bool):
            raise ValueError(f"Configuration {key} must be an integer, got: {value}")

        if isinstance(value, int):
            if value <= 0:
                raise ValueError(f"Configuration {key} must be positive, got: {value}")
            return value

        if isinstance(value, str):
            if not value.strip():
                return default
            try:
                int_value = int(value)
            except ValueError as e:
                raise ValueError(
                    f"Configuration {key} must be an integer, got: {value}"
                ) from e
            if int_value <= 0:
                raise ValueError(
                    f"Configuration {key} must be positive, got: {int_value}"
                )
            return int_value

        return default

    def _get_bool_config(self, key: str, default: bool) -> bool:
        """
        Get boolean configuration value with validation.

        Args:
            key: Configuration key
            default: Default boolean value

        Returns:
            Boolean configuration value
        """
        value = self.get_config(key, default)

        if value is None:
            return default

        if isinstance(value, bool):
            return value

        if isinstance(value, str):
            lower_value = value.lower().strip()
            if lower_value in ("true", "1", "yes", "on", "enabled"):
                return True
            elif lower_value in ("false", "0", "no", "off", "disabled"):
                return False
            else:
                raise ValueError(
                    f"Configuration {key} must be a boolean value, got: {value}"
                )

        return bool(value)

    def _validate_migration_config(self, settings: MigrationSettings) -> None:
        """
        Validate migration settings.

        Raises:
            ValueError: If configuration validation fails
        """
        if settings.max_attempts > 10:
            raise ValueError(
                f"migration max_attempts must be between 1 and 10, "
                f"got: {settings.max_attempts}"
            )

        if settings.min_wait > settings.max_wait:
            raise ValueError(
                f"migration min_wait ({settings.min_wait}s) must not exceed "
                f"max_wait ({settings.max_wait}s)"
            )
