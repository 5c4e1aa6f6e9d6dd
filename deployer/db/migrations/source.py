"""Filesystem migration source.

Migrations are SQL files in ``<base>/<domain>/migrations/`` named like:
- 1_create_content_table.up.sql
- 1_create_content_table.down.sql
- 2_add_access_log.up.sql

The leading number is the version and determines the order; the rest is
for human readability. Versions need not be contiguous.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .base import MigrationSourceError, PathLike

logger = logging.getLogger(__name__)

MIGRATION_FILE_RE = re.compile(r"^([0-9]+)_(.*)\.(up|down)\.(.+)$")


@dataclass(frozen=True)
class MigrationFile:
    """A single migration file on disk."""

    version: int
    name: str
    direction: str
    path: Path

    @property
    def display_name(self) -> str:
        """Human-readable name for logs."""
        return f"{self.version}_{self.name}"


class FileMigrationSource:
    """Discovers versioned migrations in a directory.

    The directory is re-read on every call; migration sets are small and
    this keeps results correct after a developer adds a file.
    """

    def scan(self, migrations_path: PathLike) -> list[MigrationFile]:
        """List every migration file, including duplicates.

        Args:
            migrations_path: Directory to scan

        Returns:
            Files sorted by version, then direction

        Raises:
            MigrationSourceError: If the directory is missing or unreadable
        """
        path = Path(migrations_path)
        if not path.is_dir():
            raise MigrationSourceError(f"migrations directory not found: {path}")

        try:
            entries = list(path.iterdir())
        except OSError as e:
            raise MigrationSourceError(f"failed to open migrations directory {path}: {e}") from e

        files = []
        for entry in entries:
            match = MIGRATION_FILE_RE.match(entry.name)
            if not match or not entry.is_file():
                continue
            files.append(
                MigrationFile(
                    version=int(match.group(1)),
                    name=match.group(2),
                    direction=match.group(3),
                    path=entry,
                )
            )

        return sorted(files, key=lambda f: (f.version, f.direction, f.name))

    def _files(self, migrations_path: PathLike, direction: str) -> dict[int, MigrationFile]:
        result: dict[int, MigrationFile] = {}
        for f in self.scan(migrations_path):
            if f.direction == direction:
                result.setdefault(f.version, f)
        return result

    def up_files(self, migrations_path: PathLike) -> dict[int, MigrationFile]:
        """Map version -> up file. The first file wins on duplicates."""
        return self._files(migrations_path, "up")

    def down_files(self, migrations_path: PathLike) -> dict[int, MigrationFile]:
        """Map version -> down file. The first file wins on duplicates."""
        return self._files(migrations_path, "down")

    def list_versions(self, migrations_path: PathLike) -> list[int]:
        """All distinct versions with an up file, ascending."""
        return sorted(self.up_files(migrations_path))

    def first_version(self, migrations_path: PathLike) -> Optional[int]:
        """Lowest version, or None for an empty directory."""
        versions = self.list_versions(migrations_path)
        return versions[0] if versions else None

    def next_version(self, migrations_path: PathLike, after: int) -> Optional[int]:
        """Next version strictly greater than ``after``, or None."""
        for version in self.list_versions(migrations_path):
            if version > after:
                return version
        return None

    def read_up(self, migrations_path: PathLike, version: int) -> str:
        """Read the up SQL of a version.

        Raises:
            MigrationSourceError: If the file is missing or unreadable
        """
        return self._read(self.up_files(migrations_path).get(version), "up", migrations_path, version)

    def read_down(self, migrations_path: PathLike, version: int) -> str:
        """Read the down SQL of a version.

        Raises:
            MigrationSourceError: If the file is missing or unreadable
        """
        return self._read(self.down_files(migrations_path).get(version), "down", migrations_path, version)

    def _read(
        self,
        migration: Optional[MigrationFile],
        direction: str,
        migrations_path: PathLike,
        version: int,
    ) -> str:
        if migration is None:
            raise MigrationSourceError(f"no {direction} migration for version {version} in {migrations_path}")
        try:
            return migration.path.read_text(encoding="utf-8")
        except OSError as e:
            raise MigrationSourceError(f"failed to read migration {migration.path}: {e}") from e


def enumerate_versions(source, migrations_path: PathLike) -> list[int]:
    """Walk a source with first/next and collect every version.

    Works with any object that implements ``first_version``/``next_version``.
    A ``FileMigrationSource`` is listed with a single directory scan.
    """
    if isinstance(source, FileMigrationSource):
        return source.list_versions(migrations_path)

    versions: list[int] = []
    version = source.first_version(migrations_path)
    while version is not None:
        versions.append(version)
        following = source.next_version(migrations_path, version)
        if following is not None and following <= version:
            raise MigrationSourceError(
                f"migration source returned non-increasing version {following} after {version}"
            )
        version = following
    return versions
