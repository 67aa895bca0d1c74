"""Capability protocols consumed by the bridge core.

Each protocol has one production implementation (``core.client`` for the
three remote services, ``core.git_store`` for the object store) and one
deterministic in-memory implementation (``core.memory``).

Remote services raise ``tf_bridge.errors`` exceptions:
``TransientRemoteError`` for retriable transport failures (already retried
by the implementation), ``CheckinConflict`` / ``PolicyRejected`` from
``check_in``, ``ShelvesetExists`` from ``shelve``, and ``RemoteError``
for everything else.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Mapping, Protocol, Sequence, runtime_checkable

from tf_bridge.bridge.models import (
    Changeset,
    CommitInfo,
    LocalAuthor,
    PendingChange,
    RemoteIdentity,
    RemoteItem,
    SearchFactor,
    ShelvedChange,
    Shelveset,
    TreeSnapshot,
)


class LockLevel(str, Enum):
    """Lock requested on an item while a change is pending."""

    NONE = "none"
    CHECKIN = "checkin"
    CHECKOUT = "checkout"


@runtime_checkable
class RemoteVersionControlService(Protocol):
    """Read-side history and content access."""

    def get_item(
        self, path: str, version: int | None = None
    ) -> RemoteItem | None:
        """Return the item at *path* (latest when *version* is None)."""
        ...

    def get_items(
        self, path: str, version: int | None = None, recursive: bool = True
    ) -> list[RemoteItem]:
        """Return *path* and its descendants at *version*."""
        ...

    def download_file(self, item: RemoteItem) -> bytes:
        ...

    def get_changeset(self, changeset_id: int) -> Changeset:
        ...

    def query_history(
        self,
        path: str,
        version_from: int | None = None,
        version_to: int | None = None,
        max_count: int | None = None,
        ascending: bool = False,
    ) -> list[Changeset]:
        """Return changesets touching *path* within the inclusive range.

        Results are ordered by changeset number (descending unless
        *ascending*) and truncated to *max_count* after ordering.
        """
        ...

    def latest_changeset(self, path: str) -> int | None:
        """Return the newest changeset touching *path*, or None."""
        ...

    def query_shelvesets(
        self, name: str | None = None, owner: str | None = None
    ) -> list[Shelveset]:
        """Return shelvesets matching *name* and *owner* (None matches all)."""
        ...

    def get_shelveset_changes(self, shelveset: Shelveset) -> list[ShelvedChange]:
        """Return the shelved changes, each shelved item downloadable."""
        ...

    def delete_shelveset(self, shelveset: Shelveset) -> None:
        ...


@runtime_checkable
class RemoteWorkspaceService(Protocol):
    """Write-side staging and commit against one server path."""

    def pend_add(
        self,
        path: str,
        content: bytes,
        encoding: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        ...

    def pend_edit(
        self,
        path: str,
        content: bytes,
        encoding: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        ...

    def pend_delete(
        self, path: str, lock_level: LockLevel = LockLevel.NONE
    ) -> None:
        ...

    def pend_rename(
        self,
        source_path: str,
        target_path: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        ...

    def check_in(
        self,
        changes: Sequence[PendingChange],
        author: RemoteIdentity | None,
        comment: str,
        work_items: Sequence[int] = (),
        policy_override: str | None = None,
    ) -> int:
        """Commit *changes* atomically and return the new changeset number."""
        ...

    def shelve(
        self,
        name: str,
        comment: str,
        work_items: Sequence[int] = (),
        replace: bool = False,
    ) -> Shelveset:
        """Move the pending changes into shelveset *name*.

        Raises ``ShelvesetExists`` when the name is taken and *replace* is
        not set. The workspace is left without pending changes.
        """
        ...

    def get_pending_changes(self) -> list[PendingChange]:
        ...

    def undo(self, paths: Sequence[str] | None = None) -> int:
        """Undo pending changes (all when *paths* is None); return count."""
        ...


@runtime_checkable
class RemoteIdentityService(Protocol):
    """Identity lookup."""

    def read_identity(
        self, factor: SearchFactor, value: str
    ) -> list[RemoteIdentity]:
        ...

    def read_identities(
        self, factor: SearchFactor, values: Sequence[str]
    ) -> Mapping[str, list[RemoteIdentity]]:
        """Batched ``read_identity``: one entry per requested value."""
        ...


@runtime_checkable
class LocalObjectStore(Protocol):
    """Commit and snapshot access to the local content-addressed store."""

    def head(self) -> str | None:
        ...

    def has_commit(self, commit_id: str) -> bool:
        ...

    def read_commit(self, commit_id: str) -> CommitInfo:
        ...

    def read_snapshot(self, commit_id: str) -> TreeSnapshot:
        ...

    def read_blob(self, content_id: str) -> bytes:
        ...

    def write_blob(self, data: bytes) -> str:
        ...

    def create_commit(
        self,
        snapshot: TreeSnapshot,
        parents: Sequence[str],
        author: LocalAuthor,
        committer: LocalAuthor,
        message: str,
        time: datetime | None = None,
    ) -> str:
        ...

    def commits_between(self, since: str | None, until: str) -> list[str]:
        """First-parent chain from *until* back to *since* (exclusive).

        Returned oldest first. When *since* is not on the chain the walk
        stops at the root commit.
        """
        ...

    def tag(self, name: str, commit_id: str, message: str = "") -> None:
        ...

    def update_ref(self, ref: str, commit_id: str) -> None:
        ...

    def read_ref(self, ref: str) -> str | None:
        ...

    def checkout(self, branch: str, commit_id: str) -> None:
        """Point branch *branch* at *commit_id* and make it HEAD.

        A work tree, when the store has one, is reset to the commit.
        """
        ...
