"""
Permission name to permission id translation for user roles.

Source roles list their permissions by name, while role creation on the
destination takes numeric permission ids. The table is a two-column CSV
(``permissionName,permissionId``); a minimal table ships with the package and
a complete one exported from the destination server can be passed instead.
"""

from __future__ import annotations

import csv
import io
import logging
from importlib import resources
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger: logging.Logger = logging.getLogger(__name__)

BUNDLED_TABLE = "role_permissions.csv"

# ACTIVE_ISSUES_VIEW, granted when no permission of a role can be translated
MINIMAL_PERMISSION_IDS: tuple[int, ...] = (1701,)


class PermissionLookup:
    """Case-insensitive permission name to id table."""

    def __init__(self, mapping: dict[str, int] | None = None) -> None:
        self._ids: dict[str, int] = {name.strip().upper(): pid for name, pid in (mapping or {}).items()}

    @classmethod
    def from_csv(cls, text: str) -> PermissionLookup:
        """Parse a ``permissionName,permissionId`` table; malformed rows are skipped."""
        mapping: dict[str, int] = {}
        for row in csv.reader(io.StringIO(text)):
            if len(row) < 2:
                continue
            name, raw_id = row[0].strip(), row[1].strip()
            try:
                mapping[name] = int(raw_id)
            except ValueError:
                # Header line or a row without a numeric id
                logger.debug(f"Skipping permission row {row!r}")
        return cls(mapping)

    @classmethod
    def from_file(cls, path: Path) -> PermissionLookup:
        return cls.from_csv(path.read_text(encoding="utf-8"))

    @classmethod
    def bundled(cls) -> PermissionLookup:
        text = resources.files("ncentral_migrator").joinpath("data", BUNDLED_TABLE).read_text(encoding="utf-8")
        return cls.from_csv(text)

    def __len__(self) -> int:
        return len(self._ids)

    def is_empty(self) -> bool:
        return not self._ids

    def get(self, name: str) -> int | None:
        return self._ids.get(name.strip().upper())

    def names_to_ids(self, names: Iterable[str]) -> list[int]:
        """Translate names to ids, dropping unknown names and duplicates while keeping order."""
        ids: list[int] = []
        for name in names:
            pid = self.get(name)
            if pid is None:
                logger.debug(f"No permission id known for '{name}'")
            elif pid not in ids:
                ids.append(pid)
        return ids

    def role_permission_ids(self, names: Iterable[str]) -> list[int]:
        """Ids for a new role, falling back to the minimal view permission."""
        ids = self.names_to_ids(names) if not self.is_empty() else []
        return ids or list(MINIMAL_PERMISSION_IDS)
