"""Regular-file snapshots of a working directory."""

from __future__ import annotations

import os
import stat
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class DirectorySnapshot:
    """Names of regular files present in one directory at one instant.

    ``names`` keeps enumeration order; membership checks go through the
    frozen set built alongside it.
    """

    root: Path
    names: tuple[str, ...]
    _members: frozenset[str]

    @classmethod
    def from_names(
        cls,
        root: Path | str,
        names: list[str] | tuple[str, ...],
    ) -> DirectorySnapshot:
        return cls(root=Path(root), names=tuple(names), _members=frozenset(names))

    def __contains__(self, name: object) -> bool:
        return name in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)


def take_snapshot(path: Path | str) -> DirectorySnapshot:
    """List regular files directly inside ``path``.

    Raises ``OSError`` when the directory cannot be opened. Entries that
    vanish between listing and stat are skipped. Symlinks are not followed
    and so never count as regular files.
    """

    root = Path(path)
    names: list[str] = []
    with os.scandir(root) as entries:
        for entry in entries:
            try:
                mode = entry.stat(follow_symlinks=False).st_mode
            except FileNotFoundError:
                continue
            if stat.S_ISREG(mode):
                names.append(entry.name)
    return DirectorySnapshot.from_names(root, names)
