"""Find files created since a reference snapshot."""

from __future__ import annotations

from pathlib import Path

from workitem_agent.worker.snapshot import DirectorySnapshot, take_snapshot


def diff(before: DirectorySnapshot, after: DirectorySnapshot) -> list[str]:
    """Names in ``after`` missing from ``before``, in ``after`` order."""

    if before.root.resolve() != after.root.resolve():
        raise ValueError(
            f"Snapshots of different directories are not comparable: "
            f"{before.root} vs {after.root}",
        )
    return [name for name in after if name not in before]


def new_since(before: DirectorySnapshot, path: Path | str) -> list[str]:
    """Snapshot ``path`` now and diff it against ``before``."""

    return diff(before, take_snapshot(path))
