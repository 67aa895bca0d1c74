"""Pydantic models for the bridge core.

Defines the data contracts shared by the mapping store, the pending-change
computer and the tasks:

- ``ChangesetCommitMapEntry``: one changeset <-> commit pair.
- ``TreeEntry`` / ``TreeSnapshot``: a full file tree at one point in time.
- ``PendingChange`` / ``ChangeKind``: one entry of an edit script.
- ``LocalAuthor`` / ``RemoteIdentity`` / ``SearchFactor``: identities.
- ``Changeset`` / ``RemoteItem`` / ``CommitInfo``: records read from the
  two systems.
- ``CheckinResult`` / ``CheckinReport`` / ``FetchResult`` /
  ``FetchReport``: task outcomes.
- ``Shelveset`` / ``ShelvedChange`` / ``ShelveReport`` /
  ``UnshelveResult``: parked changes and their outcomes.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Iterable, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator

from tf_bridge.errors import ErrorKind

_COMMIT_ID = re.compile(r"^[0-9a-f]{40}$")


class ChangesetCommitMapEntry(BaseModel):
    """One durable changeset <-> commit pair.

    Attributes:
        changeset: Positive changeset number.
        commit_id: 40 character lowercase hex commit id.
    """

    changeset: int = Field(gt=0)
    commit_id: str

    model_config = {"frozen": True}

    @field_validator("commit_id")
    @classmethod
    def _check_commit_id(cls, value: str) -> str:
        value = value.lower()
        if not _COMMIT_ID.match(value):
            raise ValueError(f"Invalid commit id: {value!r}")
        return value


# ---------------------------------------------------------------------------
# Trees and edit scripts
# ---------------------------------------------------------------------------


class TreeEntry(BaseModel):
    """One item of a tree snapshot.

    Attributes:
        path: ``/``-separated relative path, no leading separator.
        content_id: Content identity (blob id or content hash); ``None``
            for directories.
        is_directory: True for folder entries.
    """

    path: str
    content_id: str | None = None
    is_directory: bool = False

    model_config = {"frozen": True}


class TreeSnapshot(BaseModel):
    """An immutable, path-ordered set of tree entries."""

    entries: tuple[TreeEntry, ...] = ()

    model_config = {"frozen": True}

    @field_validator("entries")
    @classmethod
    def _check_entries(
        cls, entries: tuple[TreeEntry, ...]
    ) -> tuple[TreeEntry, ...]:
        seen: set[str] = set()
        for entry in entries:
            if entry.path in seen:
                raise ValueError(f"Duplicate path in snapshot: {entry.path}")
            seen.add(entry.path)
        return tuple(sorted(entries, key=lambda e: e.path))

    @classmethod
    def from_entries(cls, entries: Iterable[TreeEntry]) -> TreeSnapshot:
        return cls(entries=tuple(entries))

    @classmethod
    def from_files(cls, files: Mapping[str, str]) -> TreeSnapshot:
        """Build a files-only snapshot from ``{path: content_id}``."""
        return cls(
            entries=tuple(
                TreeEntry(path=path, content_id=content_id)
                for path, content_id in files.items()
            )
        )

    def by_path(self) -> dict[str, TreeEntry]:
        return {entry.path: entry for entry in self.entries}

    def get(self, path: str) -> TreeEntry | None:
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    def files(self) -> dict[str, str | None]:
        """Return ``{path: content_id}`` for file entries only."""
        return {
            entry.path: entry.content_id
            for entry in self.entries
            if not entry.is_directory
        }

    def __len__(self) -> int:
        return len(self.entries)


class ChangeKind(str, Enum):
    """Kinds of pending change."""

    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"
    RENAME = "rename"


class PendingChange(BaseModel):
    """A single edit script entry.

    Attributes:
        kind: Add, edit, delete or rename.
        source_path: Path the change applies to (the old path for renames).
        target_path: New path, set for renames only.
        content_id: Content reference for adds, edits and renames.
        is_directory: True when the change applies to a folder.
    """

    kind: ChangeKind
    source_path: str
    target_path: str | None = None
    content_id: str | None = None
    is_directory: bool = False

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_target(self) -> PendingChange:
        if self.kind == ChangeKind.RENAME and not self.target_path:
            raise ValueError("A rename requires a target path")
        if self.kind != ChangeKind.RENAME and self.target_path is not None:
            raise ValueError(f"A {self.kind.value} has no target path")
        return self

    @property
    def path(self) -> str:
        """The path this change leaves occupied (or frees, for deletes)."""
        return self.target_path or self.source_path


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------


class LocalAuthor(BaseModel):
    """A commit author as written in the local history."""

    name: str
    email: str

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[str, str]:
        """Case-insensitive lookup key."""
        return (self.name.strip().lower(), self.email.strip().lower())

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


class RemoteIdentity(BaseModel):
    """A remote user record.

    Attributes:
        unique_name: ``DOMAIN\\account`` or live id.
        display_name: Human-readable name.
        email: Mail address when the service exposes one.
    """

    unique_name: str
    display_name: str = ""
    email: str | None = None

    model_config = {"frozen": True}


class SearchFactor(str, Enum):
    """Identity search factors understood by the identity service."""

    GENERAL = "general"
    ACCOUNT_NAME = "account_name"
    DISPLAY_NAME = "display_name"
    MAIL_ADDRESS = "mail_address"


# ---------------------------------------------------------------------------
# Remote and local records
# ---------------------------------------------------------------------------


class Changeset(BaseModel):
    """A remote changeset as returned by history queries."""

    changeset_id: int = Field(gt=0)
    owner: str = ""
    owner_display_name: str = ""
    committer: str = ""
    committer_display_name: str = ""
    comment: str = ""
    created: datetime | None = None

    model_config = {"frozen": True}


class RemoteItem(BaseModel):
    """A remote item (file or folder) at a given version.

    Attributes:
        path: Server path (``$/...``).
        content_id: Content hash reported by the server; ``None`` for folders.
        is_directory: True for folders.
        changeset_id: Changeset that last modified the item.
        encoding: Server-side encoding name, ``None`` for folders.
        download_url: Opaque download locator used by ``download_file``.
    """

    path: str
    content_id: str | None = None
    is_directory: bool = False
    changeset_id: int = 0
    encoding: str | None = None
    download_url: str | None = None

    model_config = {"frozen": True}


class CommitInfo(BaseModel):
    """A local commit header."""

    commit_id: str
    parents: tuple[str, ...] = ()
    author: LocalAuthor
    committer: LocalAuthor
    message: str = ""
    time: datetime | None = None

    model_config = {"frozen": True}

    @property
    def summary(self) -> str:
        """First line of the commit message."""
        return self.message.strip().split("\n", 1)[0]


# ---------------------------------------------------------------------------
# Task outcomes
# ---------------------------------------------------------------------------


class CheckinStatus(str, Enum):
    """Overall outcome of a checkin run."""

    OK = "ok"
    UP_TO_DATE = "up_to_date"
    PREVIEW = "preview"
    PARTIAL = "partial"
    FAILED = "failed"


class FetchStatus(str, Enum):
    """Overall outcome of a fetch run."""

    OK = "ok"
    ALREADY_FETCHED = "already_fetched"
    PARTIAL = "partial"
    FAILED = "failed"


class CheckinResult(BaseModel):
    """Outcome of checking in one commit (or one squashed range).

    Attributes:
        commit_id: The commit that was checked in.
        changeset: New changeset number, ``None`` on failure or preview.
        changes: The pending changes that were (or would be) staged.
        error_kind: Error category when the commit failed.
        error: Error message when the commit failed.
    """

    commit_id: str
    changeset: int | None = None
    changes: list[PendingChange] = []
    error_kind: ErrorKind | None = None
    error: str | None = None

    model_config = {"frozen": True}

    @property
    def success(self) -> bool:
        return self.error_kind is None


class CheckinReport(BaseModel):
    """Aggregate report for a checkin run."""

    status: CheckinStatus
    server_path: str
    results: list[CheckinResult] = []
    error_kind: ErrorKind | None = None
    error: str | None = None
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    @property
    def mapped(self) -> list[CheckinResult]:
        """Results that produced a changeset."""
        return [r for r in self.results if r.changeset is not None]

    @property
    def last_changeset(self) -> int | None:
        mapped = self.mapped
        return mapped[-1].changeset if mapped else None


class FetchResult(BaseModel):
    """One changeset materialized as a local commit."""

    changeset: int
    commit_id: str
    downloaded: int = 0

    model_config = {"frozen": True}


class FetchReport(BaseModel):
    """Aggregate report for a fetch run.

    ``fetch_head`` is the commit of the latest fetched (or already mapped)
    changeset, the equivalent of ``FETCH_HEAD``.
    """

    status: FetchStatus
    server_path: str
    results: list[FetchResult] = []
    fetch_head: str | None = None
    latest_changeset: int | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    failed_changeset: int | None = None
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Shelvesets
# ---------------------------------------------------------------------------


class Shelveset(BaseModel):
    """A named set of changes parked on the server without a changeset.

    Shelvesets are unique per ``(name, owner)``; names compare
    case-insensitively.
    """

    name: str
    owner: str
    owner_display_name: str = ""
    comment: str = ""
    created: datetime | None = None

    model_config = {"frozen": True}

    def matches(self, name: str, owner: str | None = None) -> bool:
        if self.name.lower() != name.lower():
            return False
        return owner is None or self.owner.lower() == owner.lower()


class ShelvedChange(BaseModel):
    """One change held in a shelveset.

    Attributes:
        kind: Add, edit, delete or rename.
        path: Server path the change leaves occupied (or frees).
        source_path: Original server path of a rename.
        item: Shelved content; ``None`` for deletes, folders and renames
            that keep their content.
    """

    kind: ChangeKind
    path: str
    source_path: str | None = None
    item: RemoteItem | None = None

    model_config = {"frozen": True}


class ShelveStatus(str, Enum):
    """Outcome of a shelve run."""

    OK = "ok"
    NO_CHANGES = "no_changes"
    FAILED = "failed"


class ShelveReport(BaseModel):
    """Report for shelving the difference between two commits."""

    status: ShelveStatus
    name: str
    server_path: str
    commit_id: str | None = None
    base_commit: str | None = None
    changes: list[PendingChange] = []
    shelveset: Shelveset | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}


class UnshelveResult(BaseModel):
    """A shelveset materialized as an unmapped local commit."""

    shelveset: Shelveset
    commit_id: str
    base_commit: str | None = None
    tag: str | None = None
    changes: int = 0
    downloaded: int = 0

    model_config = {"frozen": True}
