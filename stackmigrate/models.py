"""
Migration data models.

Migration is one entry of the desired set, ChangelogEntry is one row of the
changelog table, and DesiredMigrations keeps the declared order of the
desired set next to an id lookup.
"""

import hashlib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

MAX_ID_LENGTH = 255


def compute_checksum(script: Union[str, bytes]) -> str:
    """
    Compute the changelog checksum of a script.

    The checksum is the lower-case hex MD5 digest of the script's bytes.
    Text is encoded as UTF-8 first. The value is persisted in the changelog,
    so the encoding must never change.

    Args:
        script: Script text or raw file bytes

    Returns:
        32 character lower-case hexadecimal digest
    """
    if isinstance(script, str):
        script = script.encode("utf-8")
    return hashlib.md5(script, usedforsecurity=False).hexdigest()


@dataclass(frozen=True)
class Migration:
    """
    A migration the operator wants applied.

    Attributes:
        id: Unique identifier, stable across runs
        script: Forward SQL
        revert_script: SQL that undoes script
        checksum: compute_checksum(script) unless given explicitly
    """

    id: str
    script: str
    revert_script: str
    checksum: str = field(default="")

    def __post_init__(self):
        if not self.id or not isinstance(self.id, str):
            raise ValueError("Migration id must be a non-empty string")
        if len(self.id) > MAX_ID_LENGTH:
            raise ValueError(
                f"Migration id '{self.id[:32]}...' exceeds {MAX_ID_LENGTH} characters"
            )
        if not self.checksum:
            object.__setattr__(self, "checksum", compute_checksum(self.script))

    def __repr__(self) -> str:
        return f"<Migration({self.id}, {self.checksum[:8]})>"


@dataclass(frozen=True)
class ChangelogEntry:
    """A migration that has been applied, as recorded in the changelog."""

    id: str
    checksum: str
    installed_at: Optional[datetime] = None
    revert_script: Optional[str] = None

    def __repr__(self) -> str:
        return f"<ChangelogEntry({self.id}, {self.checksum[:8]})>"


class DesiredMigrations:
    """
    Ordered, id-indexed view of the desired migration set.

    Iteration follows the declared order so pending migrations are applied
    reproducibly; membership and lookup by id are dict operations.
    """

    def __init__(self, migrations: Iterable[Migration] = ()):
        self._order: list[str] = []
        self._by_id: dict[str, Migration] = {}
        for migration in migrations:
            if migration.id in self._by_id:
                raise ValueError(f"Duplicate migration id '{migration.id}'")
            self._order.append(migration.id)
            self._by_id[migration.id] = migration

    @property
    def ids(self) -> list[str]:
        return list(self._order)

    def get(self, migration_id: str) -> Optional[Migration]:
        return self._by_id.get(migration_id)

    def __getitem__(self, migration_id: str) -> Migration:
        return self._by_id[migration_id]

    def __contains__(self, migration_id: object) -> bool:
        return migration_id in self._by_id

    def __iter__(self) -> Iterator[Migration]:
        return (self._by_id[migration_id] for migration_id in self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __repr__(self) -> str:
        return f"<DesiredMigrations({', '.join(self._order)})>"
