"""Changeset <-> commit mapping store.

The map lives in ``<git-dir>/tf/changesets.json``::

    {
      "version": 2,
      "high_water_mark": 12,
      "entries": [{"changeset": 10, "commit": "<sha>"}, ...]
    }

Key design choices:

* **Full load on open** -- the whole file is parsed into two dicts so both
  lookups are O(1).
* **Atomic appends** -- every ``append()`` rewrites the file through a temp
  file and ``os.replace()``, so a concurrent reader sees either the old or
  the new map, never a torn one.
* **Append-only** -- entries are never changed or removed here; only the
  upgrade manager rewrites the file.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable

from tf_bridge.bridge.models import ChangesetCommitMapEntry
from tf_bridge.core.interfaces import RemoteVersionControlService
from tf_bridge.errors import (
    DuplicateChangeset,
    OutOfOrderChangeset,
    UnsupportedFormat,
)
from tf_bridge.file_handler import write_atomic

logger = logging.getLogger(__name__)

MAP_FILENAME = "changesets.json"
MAP_FORMAT_VERSION = 2

CommitPredicate = Callable[[str], bool]


class ChangesetCommitMap:
    """Durable, append-only changeset <-> commit map.

    Args:
        path: Path of the map file.
        linear: When True (shallow mode) a commit may be mapped to one
            changeset only.
    """

    def __init__(self, path: Path, linear: bool = True) -> None:
        self.path = path
        self.linear = linear
        self._by_changeset: dict[int, str] = {}
        self._by_commit: dict[str, int] = {}
        self._high_water_mark = 0
        self._stamp: tuple[int, int, int] | None = None
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        self._by_changeset = {}
        self._by_commit = {}
        self._high_water_mark = 0
        if not self.path.exists():
            self._stamp = None
            return

        self._stamp = self._file_stamp()
        with open(self.path, encoding="utf-8") as fh:
            data = json.load(fh)

        version = data.get("version")
        if version != MAP_FORMAT_VERSION:
            raise UnsupportedFormat(
                "Unexpected changeset map format",
                path=str(self.path),
                version=version,
            )

        previous = 0
        for raw in data.get("entries", []):
            entry = ChangesetCommitMapEntry(
                changeset=raw["changeset"], commit_id=raw["commit"]
            )
            if entry.changeset <= previous:
                raise OutOfOrderChangeset(
                    "Changeset map is not in ascending order",
                    path=str(self.path),
                    changeset=entry.changeset,
                )
            previous = entry.changeset
            self._by_changeset[entry.changeset] = entry.commit_id
            self._by_commit[entry.commit_id] = entry.changeset

        self._high_water_mark = max(
            int(data.get("high_water_mark") or 0), previous
        )
        logger.debug(
            "Loaded %d changeset mappings from %s (hwm=%d)",
            len(self._by_changeset),
            self.path,
            self._high_water_mark,
        )

    def _save(self) -> None:
        payload = {
            "version": MAP_FORMAT_VERSION,
            "high_water_mark": self._high_water_mark,
            "entries": [
                {"changeset": changeset, "commit": commit_id}
                for changeset, commit_id in sorted(self._by_changeset.items())
            ],
        }
        write_atomic(self.path, json.dumps(payload, indent=2) + "\n")
        self._stamp = self._file_stamp()

    def _file_stamp(self) -> tuple[int, int, int]:
        # os.replace() gives every save a new inode
        st = self.path.stat()
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def reload(self) -> bool:
        """Re-read the file if it changed on disk; return True if reloaded."""
        current = self._file_stamp() if self.path.exists() else None
        if current == self._stamp:
            return False
        self._load()
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_commit(
        self, changeset: int, validate: CommitPredicate | None = None
    ) -> str | None:
        """Commit mapped to *changeset*.

        With *validate*, a mapped commit that no longer exists locally is
        reported as ``None``.
        """
        commit_id = self._by_changeset.get(changeset)
        if commit_id is None:
            return None
        if validate is not None and not validate(commit_id):
            return None
        return commit_id

    def get_changeset(self, commit_id: str) -> int | None:
        return self._by_commit.get(commit_id.lower())

    def last_changeset(
        self, validate: CommitPredicate | None = None
    ) -> int | None:
        """Highest bridged changeset.

        With *validate*, walk back to the newest changeset whose commit
        still exists locally.
        """
        if not self._by_changeset:
            return None
        if validate is None:
            return self._high_water_mark
        for changeset in sorted(self._by_changeset, reverse=True):
            if validate(self._by_changeset[changeset]):
                return changeset
        return None

    def previous_changeset(
        self, changeset: int, validate: CommitPredicate | None = None
    ) -> int | None:
        """Nearest mapped changeset strictly below *changeset*."""
        for candidate in sorted(self._by_changeset, reverse=True):
            if candidate >= changeset:
                continue
            if validate is None or validate(self._by_changeset[candidate]):
                return candidate
        return None

    def entries(self) -> list[ChangesetCommitMapEntry]:
        """All entries in ascending changeset order."""
        return [
            ChangesetCommitMapEntry(changeset=cs, commit_id=commit_id)
            for cs, commit_id in sorted(self._by_changeset.items())
        ]

    @property
    def high_water_mark(self) -> int:
        return self._high_water_mark

    def __len__(self) -> int:
        return len(self._by_changeset)

    def __contains__(self, changeset: object) -> bool:
        return changeset in self._by_changeset

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, changeset: int, commit_id: str) -> ChangesetCommitMapEntry:
        """Record a new mapping and flush it atomically.

        Raises:
            DuplicateChangeset: *changeset* is already mapped, or (linear
                mode) *commit_id* is already mapped to another changeset.
            OutOfOrderChangeset: *changeset* is not above the high-water
                mark.
        """
        entry = ChangesetCommitMapEntry(changeset=changeset, commit_id=commit_id)

        if entry.changeset in self._by_changeset:
            raise DuplicateChangeset(
                "Changeset is already mapped",
                changeset=entry.changeset,
                commit=self._by_changeset[entry.changeset],
            )
        if entry.changeset <= self._high_water_mark:
            raise OutOfOrderChangeset(
                "Changeset is not above the high-water mark",
                changeset=entry.changeset,
                high_water_mark=self._high_water_mark,
            )
        if self.linear and entry.commit_id in self._by_commit:
            raise DuplicateChangeset(
                "Commit is already mapped to another changeset",
                changeset=self._by_commit[entry.commit_id],
                commit=entry.commit_id,
            )

        previous_hwm = self._high_water_mark
        previous_owner = self._by_commit.get(entry.commit_id)
        self._by_changeset[entry.changeset] = entry.commit_id
        self._by_commit[entry.commit_id] = entry.changeset
        self._high_water_mark = entry.changeset
        try:
            self._save()
        except BaseException:
            # Keep memory in step with the file that is still on disk
            del self._by_changeset[entry.changeset]
            if previous_owner is None:
                del self._by_commit[entry.commit_id]
            else:
                self._by_commit[entry.commit_id] = previous_owner
            self._high_water_mark = previous_hwm
            raise
        logger.info(
            "Mapped changeset %d to commit %s",
            entry.changeset,
            entry.commit_id[:12],
        )
        return entry

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def repair(
        self,
        version_control: RemoteVersionControlService,
        server_path: str,
        head_commit_id: str | None,
        commit_lookup: Callable[[int], str | None] | None = None,
    ) -> list[ChangesetCommitMapEntry]:
        """Recover a mapping lost between a remote checkin and its append.

        Scans remote history above the high-water mark for a changeset
        that references *head_commit_id*: either its comment contains the
        commit id, or *commit_lookup* resolves the changeset to it.

        Returns:
            The entries that were appended (empty when nothing needed
            repair).
        """
        if not head_commit_id or self.get_changeset(head_commit_id) is not None:
            return []

        history = version_control.query_history(
            server_path,
            version_from=self._high_water_mark + 1,
            ascending=True,
        )
        repaired: list[ChangesetCommitMapEntry] = []
        for changeset in history:
            if head_commit_id in changeset.comment:
                found = head_commit_id
            elif commit_lookup is not None:
                found = commit_lookup(changeset.changeset_id)
            else:
                found = None
            if found != head_commit_id:
                continue
            logger.warning(
                "Repairing missing mapping: changeset %d -> commit %s",
                changeset.changeset_id,
                head_commit_id[:12],
            )
            repaired.append(self.append(changeset.changeset_id, head_commit_id))
            break
        return repaired
