"""Park local commits in shelvesets and bring shelvesets back as commits.

``ShelveTask`` pends the difference between the last synchronized commit
and a local commit, then moves it into a named shelveset instead of
checking it in. ``UnshelveTask`` applies a shelveset on top of the last
synchronized commit and records the result as a local commit tagged
``shelveset-<name>``. That commit is never mapped to a changeset.

Neither task touches the changeset map.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Sequence

from pydantic import BaseModel, Field

from tf_bridge.bridge.checkin import build_comment, stage_changes
from tf_bridge.bridge.fetch import local_identity
from tf_bridge.bridge.identity import IdentityResolver
from tf_bridge.bridge.models import (
    ChangeKind,
    ShelvedChange,
    Shelveset,
    ShelveReport,
    ShelveStatus,
    TreeEntry,
    TreeSnapshot,
    UnshelveResult,
)
from tf_bridge.bridge.paths import is_ancestor, to_relative
from tf_bridge.bridge.pending import PendingChangeComputer, validate_snapshot
from tf_bridge.bridge.state import ChangesetCommitMap
from tf_bridge.config_schema import (
    BridgeConfig,
    RenameMode,
    RepositoryConfiguration,
)
from tf_bridge.core.async_utils import download_all_blocking
from tf_bridge.core.interfaces import (
    LocalObjectStore,
    RemoteVersionControlService,
    RemoteWorkspaceService,
)
from tf_bridge.errors import (
    AmbiguousShelveset,
    BridgeError,
    CaseCollision,
    DownloadFailed,
    InvalidItemPath,
    InvalidTransition,
    RemoteError,
    ShelvesetExists,
    ShelvesetNotFound,
)
from tf_bridge.validators import validate_shelveset_name

logger = logging.getLogger(__name__)

_EXPECTED_ERRORS = (
    ShelvesetExists,
    CaseCollision,
    InvalidItemPath,
    InvalidTransition,
    RemoteError,
)
_UNSAFE_TAG_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_NO_DATE = datetime.min.replace(tzinfo=timezone.utc)


class ShelvesetSort(str, Enum):
    """Orderings for shelveset listings."""

    NAME = "name"
    OWNER = "owner"
    DATE = "date"


def sort_shelvesets(
    shelvesets: Iterable[Shelveset], sort: ShelvesetSort = ShelvesetSort.DATE
) -> list[Shelveset]:
    """Order by name or owner (case-insensitive), or newest first by date."""
    if sort == ShelvesetSort.NAME:
        return sorted(shelvesets, key=lambda s: (s.name.lower(), s.owner.lower()))
    if sort == ShelvesetSort.OWNER:
        return sorted(shelvesets, key=lambda s: (s.owner.lower(), s.name.lower()))
    return sorted(shelvesets, key=lambda s: s.created or _NO_DATE, reverse=True)


def list_shelvesets(
    version_control: RemoteVersionControlService,
    name: str | None = None,
    owner: str | None = None,
    sort: ShelvesetSort = ShelvesetSort.DATE,
) -> list[Shelveset]:
    return sort_shelvesets(version_control.query_shelvesets(name, owner), sort)


def find_shelveset(
    version_control: RemoteVersionControlService,
    name: str,
    owner: str | None = None,
) -> Shelveset:
    """The one shelveset called *name* (owned by *owner* when given).

    Raises:
        ShelvesetNotFound: Nothing matches.
        AmbiguousShelveset: Several owners use the name and none was given.
    """
    matches = [
        s for s in version_control.query_shelvesets(name, owner)
        if s.matches(name, owner)
    ]
    if not matches:
        raise ShelvesetNotFound("No shelveset with this name", name=name, owner=owner)
    if len(matches) > 1:
        raise AmbiguousShelveset(
            "Several owners have a shelveset with this name; give the owner",
            owners=sorted(s.owner for s in matches),
            name=name,
        )
    return matches[0]


def delete_shelveset(
    version_control: RemoteVersionControlService,
    name: str,
    owner: str | None = None,
) -> Shelveset:
    shelveset = find_shelveset(version_control, name, owner)
    version_control.delete_shelveset(shelveset)
    logger.info("Deleted shelveset %s (%s)", shelveset.name, shelveset.owner)
    return shelveset


def shelveset_tag(name: str) -> str:
    """Tag for an unshelved commit: ``shelveset-<name>`` with unsafe runs as ``_``."""
    cleaned = _UNSAFE_TAG_CHARS.sub("_", name).strip("._")
    if not cleaned:
        cleaned = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"shelveset-{cleaned}"


def _base_commit(
    changeset_map: ChangesetCommitMap, store: LocalObjectStore
) -> str | None:
    last = changeset_map.last_changeset(validate=store.has_commit)
    return changeset_map.get_commit(last) if last is not None else None


class ShelveOptions(BaseModel):
    """Per-run shelve options."""

    comment: str | None = None
    work_items: list[int] = []
    replace: bool = False
    rename_mode: RenameMode = RenameMode.FILES
    max_comment_rollup: int = Field(default=20, ge=1)

    model_config = {"frozen": True}

    @classmethod
    def from_config(cls, bridge: BridgeConfig, **overrides) -> ShelveOptions:
        values = {
            "rename_mode": bridge.rename_mode,
            "max_comment_rollup": bridge.max_comment_rollup,
        }
        values.update(overrides)
        return cls(**values)


class ShelveTask:
    """Shelve the difference between the last synchronized commit and a commit.

    Args:
        config: Repository configuration.
        changeset_map: The repository's mapping store (read only).
        store: Local object store.
        workspace: Remote staging service that owns the shelveset.
        options: Per-run options.
    """

    def __init__(
        self,
        config: RepositoryConfiguration,
        changeset_map: ChangesetCommitMap,
        store: LocalObjectStore,
        workspace: RemoteWorkspaceService,
        options: ShelveOptions | None = None,
    ) -> None:
        self.config = config
        self.changeset_map = changeset_map
        self.store = store
        self.workspace = workspace
        self.options = options or ShelveOptions()
        self.computer = PendingChangeComputer(self.options.rename_mode)

    def run(self, name: str, commit_id: str | None = None) -> ShelveReport:
        """Shelve *commit_id* (default: HEAD) as *name*.

        Raises:
            ValueError: *name* is not a valid shelveset name.
        """
        ok, reason = validate_shelveset_name(name)
        if not ok:
            raise ValueError(reason)
        started_at = datetime.now(timezone.utc).isoformat()
        head = commit_id or self.store.head()
        base_commit = _base_commit(self.changeset_map, self.store)

        def report(
            status: ShelveStatus,
            changes: Sequence = (),
            shelveset: Shelveset | None = None,
            error: BridgeError | None = None,
        ) -> ShelveReport:
            return ShelveReport(
                status=status,
                name=name,
                server_path=self.config.server_path,
                commit_id=head,
                base_commit=base_commit,
                changes=list(changes),
                shelveset=shelveset,
                error_kind=error.kind if error else None,
                error=str(error) if error else None,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc).isoformat(),
            )

        try:
            if head is None:
                raise InvalidTransition("Nothing to shelve: no HEAD commit")
            if head == base_commit:
                logger.info("Commit %s is already checked in", head[:12])
                return report(ShelveStatus.NO_CHANGES)

            base = (
                self.store.read_snapshot(base_commit)
                if base_commit is not None
                else TreeSnapshot()
            )
            target = self.store.read_snapshot(head)
            validate_snapshot(target)
            changes = self.computer.compute_edits(base, target)
            if not changes:
                logger.info("Commit %s has no changes to shelve", head[:12])
                return report(ShelveStatus.NO_CHANGES)

            comment = self.options.comment
            if comment is None:
                commits = [
                    self.store.read_commit(c)
                    for c in self.store.commits_between(base_commit, head)
                ]
                comment = build_comment(
                    commits, max_rollup=self.options.max_comment_rollup
                )
            try:
                stage_changes(
                    self.workspace, self.store, self.config.server_path, changes
                )
                shelveset = self.workspace.shelve(
                    name, comment, self.options.work_items, self.options.replace
                )
            except BaseException:
                undone = self.workspace.undo()
                logger.debug("Undid %d pending changes", undone)
                raise
        except _EXPECTED_ERRORS as exc:
            logger.error(
                "Shelving %s failed: %s", name, exc, extra={"context": exc.context}
            )
            return report(ShelveStatus.FAILED, error=exc)

        logger.info(
            "Shelved %d change(s) of commit %s as %s",
            len(changes),
            head[:12],
            shelveset.name,
        )
        return report(ShelveStatus.OK, changes, shelveset)


class UnshelveTask:
    """Rebuild a shelveset as a local commit on the last synchronized commit.

    Changes outside the configured server path are skipped.

    Args:
        config: Repository configuration.
        changeset_map: The repository's mapping store (read only).
        store: Local object store receiving blobs, the commit and its tag.
        version_control: Shelveset queries and downloads.
        identity: Optional resolver for owner -> author mapping.
        max_parallel_downloads: Concurrent downloads.
    """

    def __init__(
        self,
        config: RepositoryConfiguration,
        changeset_map: ChangesetCommitMap,
        store: LocalObjectStore,
        version_control: RemoteVersionControlService,
        identity: IdentityResolver | None = None,
        max_parallel_downloads: int = 4,
    ) -> None:
        self.config = config
        self.changeset_map = changeset_map
        self.store = store
        self.version_control = version_control
        self.identity = identity
        self.max_parallel_downloads = max_parallel_downloads

    def run(self, name: str, owner: str | None = None) -> UnshelveResult:
        """Unshelve *name*.

        Raises:
            ShelvesetNotFound: No shelveset matches.
            AmbiguousShelveset: Several owners use *name*.
            DownloadFailed: Shelved content could not be retrieved.
        """
        shelveset = find_shelveset(self.version_control, name, owner)
        root = self.config.server_path
        relevant: list[tuple[ShelvedChange, str]] = []
        for change in self.version_control.get_shelveset_changes(shelveset):
            try:
                relevant.append((change, to_relative(root, change.path)))
            except ValueError:
                logger.warning(
                    "Skipping shelved change outside %s: %s", root, change.path
                )

        base_commit = _base_commit(self.changeset_map, self.store)
        files = (
            dict(self.store.read_snapshot(base_commit).files())
            if base_commit is not None
            else {}
        )

        items = [c.item for c, _ in relevant if c.item is not None]
        try:
            contents = download_all_blocking(
                self.version_control.download_file,
                items,
                self.max_parallel_downloads,
            )
        except RemoteError as exc:
            raise DownloadFailed(
                "Could not download shelved contents",
                name=shelveset.name,
                path=exc.context.get("path"),
            ) from exc
        blobs = {
            item.path: self.store.write_blob(data)
            for item, data in zip(items, contents)
        }

        for change, relative in relevant:
            if change.kind == ChangeKind.DELETE:
                for path in [p for p in files if is_ancestor(relative, p)]:
                    del files[path]
            elif change.kind == ChangeKind.RENAME:
                self._move(files, root, change, relative)
            if change.item is not None:
                files[relative] = blobs[change.item.path]

        snapshot = TreeSnapshot.from_entries(
            TreeEntry(path=path, content_id=content_id)
            for path, content_id in files.items()
        )
        author = local_identity(
            shelveset.owner, shelveset.owner_display_name, self.identity
        )
        commit_id = self.store.create_commit(
            snapshot,
            [base_commit] if base_commit else [],
            author,
            author,
            shelveset.comment or f"Shelveset {shelveset.name}",
            shelveset.created,
        )
        tag = shelveset_tag(shelveset.name)
        self.store.tag(tag, commit_id)
        logger.info(
            "Unshelved %s as commit %s (%s)", shelveset.name, commit_id[:12], tag
        )
        return UnshelveResult(
            shelveset=shelveset,
            commit_id=commit_id,
            base_commit=base_commit,
            tag=tag,
            changes=len(relevant),
            downloaded=len(items),
        )

    @staticmethod
    def _move(
        files: dict[str, str | None],
        root: str,
        change: ShelvedChange,
        relative: str,
    ) -> None:
        try:
            source = to_relative(root, change.source_path or "")
        except ValueError:
            # Moved in from outside the mapped folder: only the content counts
            return
        if not source:
            return
        for path in [p for p in files if is_ancestor(source, p)]:
            files[relative + path[len(source):]] = files.pop(path)
