"""Tree diff into an ordered edit script.

``PendingChangeComputer.compute_edits(base, target)`` compares two
``TreeSnapshot`` objects and returns the ``PendingChange`` list that,
applied in order to *base*, yields *target* (see ``apply_edits``).

Algorithm
---------
1. Index both snapshots by path. Paths only in *base* are deletions, only
   in *target* additions; files present in both with a different content
   id are edits. A path that changes between file and folder is a
   deletion plus an addition.
2. Rename pass (unless ``RenameMode.NONE``): every added file is paired
   with an unused deleted file of identical content id. Among several
   candidates the one sharing the longest common path prefix wins, then
   the one with the same file name. Only exact content matches qualify.
3. Folder batching (``RenameMode.ALL``): file renames that together move
   a whole folder become one folder rename. A deleted folder also
   absorbs the deletes of everything below it.

Ordering
--------
edits, deletes that free a path needed by a later entry, folder adds
(parents first), renames (deepest target first), remaining deletes, file
adds. A delete therefore never follows an add or rename at the same path,
below it or at one of its parent folders, and no two non-delete entries
target the same path.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Sequence

from tf_bridge.bridge.models import (
    ChangeKind,
    PendingChange,
    TreeEntry,
    TreeSnapshot,
)
from tf_bridge.bridge.paths import common_prefix, folder_depth, is_ancestor
from tf_bridge.config_schema import RenameMode
from tf_bridge.errors import CaseCollision

logger = logging.getLogger(__name__)


def _under(path: str, folder: str) -> bool:
    return path.startswith(folder + "/")


def _common_suffix_split(source: str, target: str) -> tuple[str, str]:
    """Strip the longest shared trailing segments, keeping one on each side."""
    src = source.split("/")
    dst = target.split("/")
    shared = 0
    while (
        shared < min(len(src), len(dst)) - 1
        and src[-1 - shared] == dst[-1 - shared]
    ):
        shared += 1
    if shared == 0:
        return ("", "")
    return ("/".join(src[: len(src) - shared]), "/".join(dst[: len(dst) - shared]))


class PendingChangeComputer:
    """Compute edit scripts between snapshots.

    Args:
        rename_mode: Which renames to detect.
    """

    def __init__(self, rename_mode: RenameMode = RenameMode.FILES) -> None:
        self.rename_mode = rename_mode

    def compute_edits(
        self, base: TreeSnapshot, target: TreeSnapshot
    ) -> list[PendingChange]:
        base_map = base.by_path()
        target_map = target.by_path()

        edits: list[PendingChange] = []
        deleted: dict[str, TreeEntry] = {}
        added: dict[str, TreeEntry] = {}

        for path in sorted(base_map.keys() | target_map.keys()):
            old = base_map.get(path)
            new = target_map.get(path)
            if old is None:
                added[path] = new  # type: ignore[assignment]
            elif new is None:
                deleted[path] = old
            elif old.is_directory != new.is_directory:
                deleted[path] = old
                added[path] = new
            elif not new.is_directory and old.content_id != new.content_id:
                edits.append(
                    PendingChange(
                        kind=ChangeKind.EDIT,
                        source_path=path,
                        content_id=new.content_id,
                    )
                )

        # Deleted paths that must go before anything lands at, below or
        # above them
        blocking = {
            d
            for d in deleted
            if any(is_ancestor(d, a) or is_ancestor(a, d) for a in added)
        }

        renames: list[PendingChange] = []
        if self.rename_mode != RenameMode.NONE:
            pairs = self._pair_renames(deleted, added, blocking)
            if self.rename_mode == RenameMode.ALL:
                folder_renames, pairs = self._batch_folder_renames(
                    pairs, base_map, target_map
                )
                for source, dest in folder_renames:
                    for path in [p for p in deleted if p == source or _under(p, source)]:
                        del deleted[path]
                    for path in [p for p in added if p == dest or _under(p, dest)]:
                        del added[path]
                    renames.append(
                        PendingChange(
                            kind=ChangeKind.RENAME,
                            source_path=source,
                            target_path=dest,
                            is_directory=True,
                        )
                    )
            for source, dest in pairs:
                content_id = deleted.pop(source).content_id
                del added[dest]
                renames.append(
                    PendingChange(
                        kind=ChangeKind.RENAME,
                        source_path=source,
                        target_path=dest,
                        content_id=content_id,
                    )
                )

        # A deleted folder takes everything below it along
        deleted_dirs = {p for p, e in deleted.items() if e.is_directory}
        delete_paths = [
            p
            for p in deleted
            if not any(_under(p, d) for d in deleted_dirs)
        ]

        claimed = list(added) + [r.target_path or "" for r in renames]
        first_deletes = [
            p
            for p in delete_paths
            if any(is_ancestor(p, c) or is_ancestor(c, p) for c in claimed)
        ]
        later_deletes = [p for p in delete_paths if p not in first_deletes]

        folder_adds = sorted(
            (p for p, e in added.items() if e.is_directory),
            key=lambda p: (folder_depth(p), p),
        )
        file_adds = sorted(p for p, e in added.items() if not e.is_directory)
        renames.sort(
            key=lambda r: (-folder_depth(r.target_path or ""), r.target_path)
        )

        result: list[PendingChange] = list(edits)
        result += [self._delete(p, deleted[p]) for p in first_deletes]
        result += [
            PendingChange(kind=ChangeKind.ADD, source_path=p, is_directory=True)
            for p in folder_adds
        ]
        result += renames
        result += [self._delete(p, deleted[p]) for p in later_deletes]
        result += [
            PendingChange(
                kind=ChangeKind.ADD,
                source_path=p,
                content_id=added[p].content_id,
            )
            for p in file_adds
        ]

        logger.debug(
            "Computed %d pending changes (%d edits, %d renames, %d deletes, "
            "%d adds)",
            len(result),
            len(edits),
            len(renames),
            len(delete_paths),
            len(folder_adds) + len(file_adds),
        )
        return result

    @staticmethod
    def _delete(path: str, entry: TreeEntry) -> PendingChange:
        return PendingChange(
            kind=ChangeKind.DELETE,
            source_path=path,
            is_directory=entry.is_directory,
        )

    @staticmethod
    def _pair_renames(
        deleted: dict[str, TreeEntry],
        added: dict[str, TreeEntry],
        blocking: set[str],
    ) -> list[tuple[str, str]]:
        by_content: dict[str, list[str]] = defaultdict(list)
        for path, entry in deleted.items():
            if entry.is_directory or entry.content_id is None:
                continue
            # A source at or below a path that must be freed first is gone
            # before renames run
            if any(is_ancestor(b, path) for b in blocking):
                continue
            by_content[entry.content_id].append(path)

        used: set[str] = set()
        pairs: list[tuple[str, str]] = []
        for dest in sorted(added):
            entry = added[dest]
            if entry.is_directory or entry.content_id is None:
                continue
            candidates = [
                s for s in by_content.get(entry.content_id, []) if s not in used
            ]
            if not candidates:
                continue
            dest_name = dest.rsplit("/", 1)[-1]

            def rank(source: str) -> tuple[int, int, str]:
                prefix, _, _ = common_prefix(source, dest)
                same_name = source.rsplit("/", 1)[-1] == dest_name
                return (-folder_depth(prefix), 0 if same_name else 1, source)

            best = min(candidates, key=rank)
            used.add(best)
            pairs.append((best, dest))
        return pairs

    @staticmethod
    def _batch_folder_renames(
        pairs: list[tuple[str, str]],
        base_map: dict[str, TreeEntry],
        target_map: dict[str, TreeEntry],
    ) -> tuple[list[tuple[str, str]], list[tuple[str, str]]]:
        remaining = set(pairs)
        candidates = sorted(
            {
                split
                for split in (_common_suffix_split(s, t) for s, t in pairs)
                if split[0] and split[1]
            },
            key=lambda c: (folder_depth(c[0]), c),
        )

        folders: list[tuple[str, str]] = []
        for source, dest in candidates:
            if source in target_map or any(_under(p, source) for p in target_map):
                continue
            if dest in base_map or any(_under(p, dest) for p in base_map):
                continue
            base_sub = {
                p[len(source) + 1:]: e
                for p, e in base_map.items()
                if _under(p, source)
            }
            target_sub = {
                p[len(dest) + 1:]: e
                for p, e in target_map.items()
                if _under(p, dest)
            }
            if not base_sub or base_sub.keys() != target_sub.keys():
                continue
            moved = {
                (f"{source}/{rest}", f"{dest}/{rest}")
                for rest, e in base_sub.items()
                if not e.is_directory
            }
            if any(
                base_sub[rest].is_directory != target_sub[rest].is_directory
                for rest in base_sub
            ) or not moved <= remaining:
                continue
            remaining -= moved
            folders.append((source, dest))
            logger.debug("Batched %d renames into %s -> %s", len(moved), source, dest)

        return folders, [p for p in pairs if p in remaining]


def compute_edits(
    base: TreeSnapshot,
    target: TreeSnapshot,
    rename_mode: RenameMode = RenameMode.FILES,
) -> list[PendingChange]:
    """Convenience wrapper around ``PendingChangeComputer``."""
    return PendingChangeComputer(rename_mode).compute_edits(base, target)


def apply_edits(
    base: TreeSnapshot, edits: Iterable[PendingChange]
) -> TreeSnapshot:
    """Apply an edit script to *base* sequentially.

    Deletes and renames act on the whole subtree below a folder.

    Raises:
        ValueError: An entry does not apply (adding an existing path,
            editing or removing a missing one).
    """
    tree = base.by_path()
    for change in edits:
        source = change.source_path
        if change.kind == ChangeKind.ADD:
            if source in tree:
                raise ValueError(f"Cannot add existing path {source}")
            tree[source] = TreeEntry(
                path=source,
                content_id=change.content_id,
                is_directory=change.is_directory,
            )
        elif change.kind == ChangeKind.EDIT:
            if source not in tree or tree[source].is_directory:
                raise ValueError(f"Cannot edit missing file {source}")
            tree[source] = TreeEntry(path=source, content_id=change.content_id)
        elif change.kind == ChangeKind.DELETE:
            doomed = [p for p in tree if p == source or _under(p, source)]
            if source not in tree and not doomed:
                raise ValueError(f"Cannot delete missing path {source}")
            for path in doomed:
                del tree[path]
        else:
            dest = change.target_path or ""
            moved = [p for p in tree if p == source or _under(p, source)]
            if not moved:
                raise ValueError(f"Cannot rename missing path {source}")
            if dest in tree:
                raise ValueError(f"Cannot rename onto existing path {dest}")
            for path in moved:
                entry = tree.pop(path)
                new_path = dest + path[len(source):]
                tree[new_path] = TreeEntry(
                    path=new_path,
                    content_id=entry.content_id,
                    is_directory=entry.is_directory,
                )
    return TreeSnapshot.from_entries(tree.values())


def validate_snapshot(snapshot: TreeSnapshot | Sequence[TreeEntry]) -> None:
    """Reject trees holding two paths that differ only by case.

    Raises:
        CaseCollision: With the colliding paths in ``context["paths"]``.
    """
    entries = snapshot.entries if isinstance(snapshot, TreeSnapshot) else snapshot
    seen: dict[str, str] = {}
    for entry in entries:
        folded = entry.path.lower()
        if folded in seen and seen[folded] != entry.path:
            raise CaseCollision(
                "Paths differ only by case",
                paths=f"{seen[folded]}, {entry.path}",
            )
        seen[folded] = entry.path
