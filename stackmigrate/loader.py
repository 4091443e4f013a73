"""
Loading of the desired migration set from disk.

The config file is a JSON array of migration ids in apply order. Each id
has a forward script ``<id>.sql`` and a revert script ``<id>.revert.sql``
in the script directory.
"""

import json
from pathlib import Path
from typing import Union

from stackmigrate.errors import LoadError
from stackmigrate.log import get_logger
from stackmigrate.models import MAX_ID_LENGTH, Migration, compute_checksum

SCRIPT_SUFFIX = ".sql"
REVERT_SUFFIX = ".revert.sql"


def read_migration_ids(config_file: Union[str, Path]) -> list[str]:
    """
    Read the ordered list of migration ids from a JSON config file.

    Args:
        config_file: Path to the JSON config file

    Returns:
        Migration ids in declared order

    Raises:
        LoadError: If the file is unreadable, not JSON, not a list of
                   non-empty unique strings, or an id is not usable as a
                   file name
    """
    config_path = Path(config_file)
    try:
        with config_path.open(encoding="utf-8") as f:
            migration_ids = json.load(f)
    except OSError as e:
        raise LoadError(
            f"failed to open config file {config_path}: {e}",
            path=str(config_path),
            cause=e,
        ) from e
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise LoadError(
            f"failed to decode config file {config_path}: {e}",
            path=str(config_path),
            cause=e,
        ) from e

    if not isinstance(migration_ids, list):
        raise LoadError(
            f"config file {config_path} must contain a JSON array of migration ids",
            path=str(config_path),
        )

    seen = set()
    for position, migration_id in enumerate(migration_ids):
        if not isinstance(migration_id, str) or not migration_id.strip():
            raise LoadError(
                f"entry {position} of {config_path} is not a non-empty string",
                path=str(config_path),
            )
        if len(migration_id) > MAX_ID_LENGTH:
            raise LoadError(
                f"migration id at entry {position} exceeds {MAX_ID_LENGTH} characters",
                migration_id=migration_id,
                path=str(config_path),
            )
        if "/" in migration_id or "\\" in migration_id or migration_id in (".", ".."):
            raise LoadError(
                f"migration id '{migration_id}' must not contain path separators",
                migration_id=migration_id,
                path=str(config_path),
            )
        if migration_id in seen:
            raise LoadError(
                f"migration id '{migration_id}' is declared more than once",
                migration_id=migration_id,
                path=str(config_path),
            )
        seen.add(migration_id)

    return migration_ids


def _read_script(path: Path, migration_id: str) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise LoadError(
            f"failed to open file {path}: {e}",
            migration_id=migration_id,
            path=str(path),
            cause=e,
        ) from e


def _decode_script(content: bytes, path: Path, migration_id: str) -> str:
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise LoadError(
            f"file {path} is not valid UTF-8: {e}",
            migration_id=migration_id,
            path=str(path),
            cause=e,
        ) from e


def load_migration(script_dir: Union[str, Path], migration_id: str) -> Migration:
    """
    Read one migration's script pair and checksum the forward script.

    Args:
        script_dir: Directory holding the script files
        migration_id: Id of the migration to read

    Returns:
        Migration with checksum over the forward script's bytes

    Raises:
        LoadError: If either script is missing or not UTF-8
    """
    script_dir = Path(script_dir)
    script_path = script_dir / f"{migration_id}{SCRIPT_SUFFIX}"
    revert_path = script_dir / f"{migration_id}{REVERT_SUFFIX}"

    script_bytes = _read_script(script_path, migration_id)
    revert_bytes = _read_script(revert_path, migration_id)

    return Migration(
        id=migration_id,
        script=_decode_script(script_bytes, script_path, migration_id),
        revert_script=_decode_script(revert_bytes, revert_path, migration_id),
        checksum=compute_checksum(script_bytes),
    )


def load_migrations(
    config_file: Union[str, Path], script_dir: Union[str, Path]
) -> list[Migration]:
    """
    Load the desired migration set.

    Args:
        config_file: JSON array of migration ids, in apply order
        script_dir: Directory holding ``<id>.sql`` and ``<id>.revert.sql``

    Returns:
        Migrations in declared order

    Raises:
        LoadError: If the config or any script cannot be read
    """
    logger = get_logger("MigrationLoader")

    migration_ids = read_migration_ids(config_file)
    migrations = [load_migration(script_dir, migration_id) for migration_id in migration_ids]

    logger.info(f"Loaded {len(migrations)} migrations from {config_file}")
    for migration in migrations:
        logger.debug(f"Migration '{migration.id}' checksum: {migration.checksum}")

    return migrations
