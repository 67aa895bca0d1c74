"""Materialize server changesets as local commits.

State table::

    INIT -> RANGE_RESOLVED -> DOWNLOADING -> TRANSLATING -> COMMITTING
                 |                 ^                           |
                 |                 +---------- MAPPED <--------+
                 +-> DONE                         |
                                                  +-> DONE

Every non-terminal state can move to ABORTED. Changesets are processed in
ascending order; a failure at changeset N keeps the mappings up to N-1
and records no commit for N.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from tf_bridge.bridge.identity import IdentityResolver
from tf_bridge.bridge.machine import CancellationToken, StateMachine
from tf_bridge.bridge.models import (
    Changeset,
    FetchReport,
    FetchResult,
    FetchStatus,
    LocalAuthor,
    RemoteItem,
    TreeEntry,
    TreeSnapshot,
)
from tf_bridge.bridge.paths import to_relative
from tf_bridge.bridge.state import ChangesetCommitMap
from tf_bridge.config_schema import RepositoryConfiguration, TfsConfig
from tf_bridge.core.async_utils import download_all_blocking
from tf_bridge.core.interfaces import (
    LocalObjectStore,
    RemoteVersionControlService,
)
from tf_bridge.errors import (
    BridgeError,
    DownloadFailed,
    DuplicateChangeset,
    OutOfOrderChangeset,
    RemoteError,
    TaskCancelled,
)

logger = logging.getLogger(__name__)


class FetchState(str, Enum):
    INIT = "init"
    RANGE_RESOLVED = "range_resolved"
    DOWNLOADING = "downloading"
    TRANSLATING = "translating"
    COMMITTING = "committing"
    MAPPED = "mapped"
    DONE = "done"
    ABORTED = "aborted"


_F = FetchState
FETCH_TRANSITIONS: dict[FetchState, frozenset[FetchState]] = {
    _F.INIT: frozenset({_F.RANGE_RESOLVED, _F.ABORTED}),
    _F.RANGE_RESOLVED: frozenset({_F.DOWNLOADING, _F.DONE, _F.ABORTED}),
    _F.DOWNLOADING: frozenset({_F.TRANSLATING, _F.ABORTED}),
    _F.TRANSLATING: frozenset({_F.COMMITTING, _F.ABORTED}),
    _F.COMMITTING: frozenset({_F.MAPPED, _F.ABORTED}),
    _F.MAPPED: frozenset({_F.DOWNLOADING, _F.DONE, _F.ABORTED}),
    _F.DONE: frozenset(),
    _F.ABORTED: frozenset(),
}

_EXPECTED_ERRORS = (DownloadFailed, RemoteError, TaskCancelled)
# Per changeset only: the mappings made so far stay valid
_MAPPING_ERRORS = (OutOfOrderChangeset, DuplicateChangeset)


class FetchOptions(BaseModel):
    """Per-run fetch options.

    Attributes:
        deep: Fetch every changeset in the range (``None``: repository
            setting).
        force: Re-fetch the latest changeset even when it is mapped. The
            new commit is never mapped.
        target_changeset: Fetch up to this changeset instead of the tip.
        limit: Keep only the newest *limit* changesets of a deep range.
        max_parallel_downloads: Concurrent downloads per changeset.
    """

    deep: bool | None = None
    force: bool = False
    target_changeset: int | None = Field(default=None, gt=0)
    limit: int | None = Field(default=None, ge=1)
    max_parallel_downloads: int = Field(default=4, ge=1, le=64)

    model_config = {"frozen": True}

    @classmethod
    def from_config(cls, tfs: TfsConfig, **overrides) -> FetchOptions:
        values = {"max_parallel_downloads": tfs.max_parallel_downloads}
        values.update(overrides)
        return cls(**values)


def local_identity(
    unique_name: str,
    display_name: str,
    identity: IdentityResolver | None,
) -> LocalAuthor:
    """Local author for a remote account (user map first, then as-is)."""
    if identity is not None and unique_name:
        mapped = identity.local_author_for(unique_name)
        if mapped is not None:
            return mapped
    account = unique_name.rsplit("\\", 1)[-1]
    return LocalAuthor(
        name=display_name or account or "unknown",
        email=unique_name or "unknown",
    )


def changeset_author(
    changeset: Changeset, identity: IdentityResolver | None = None
) -> LocalAuthor:
    """Local author for a changeset owner.

    The user map's reverse lookup wins; otherwise the owner's display name
    and account name are used as they are.
    """
    return local_identity(
        changeset.owner, changeset.owner_display_name, identity
    )


def changeset_committer(
    changeset: Changeset, identity: IdentityResolver | None = None
) -> LocalAuthor:
    """Local committer for the account that checked the changeset in.

    Falls back to the author when the server reports no committer or the
    owner checked the changeset in.
    """
    if not changeset.committer or changeset.committer == changeset.owner:
        return changeset_author(changeset, identity)
    return local_identity(
        changeset.committer, changeset.committer_display_name, identity
    )


class FetchTask:
    """Download server changesets into the local store.

    Args:
        config: Repository configuration.
        changeset_map: The repository's mapping store.
        store: Local object store receiving blobs and commits.
        version_control: Remote history and item access.
        identity: Optional resolver for owner -> author mapping.
        options: Per-run options.
        cancel_token: Cooperative cancellation, honoured between changesets.
    """

    def __init__(
        self,
        config: RepositoryConfiguration,
        changeset_map: ChangesetCommitMap,
        store: LocalObjectStore,
        version_control: RemoteVersionControlService,
        identity: IdentityResolver | None = None,
        options: FetchOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.config = config
        self.changeset_map = changeset_map
        self.store = store
        self.version_control = version_control
        self.identity = identity
        self.options = options or FetchOptions()
        self.cancel_token = cancel_token or CancellationToken()
        self.machine: StateMachine[FetchState] = StateMachine(
            "fetch", FETCH_TRANSITIONS, FetchState.INIT
        )

    @property
    def deep(self) -> bool:
        if self.options.deep is not None:
            return self.options.deep
        return self.config.deep

    def run(self) -> FetchReport:
        """Fetch the resolved changeset range."""
        started_at = datetime.now(timezone.utc).isoformat()
        server_path = self.config.server_path
        results: list[FetchResult] = []
        validate = self.store.has_commit

        def report(
            status: FetchStatus,
            error: BridgeError | None = None,
            failed: int | None = None,
        ) -> FetchReport:
            last = results[-1] if results else None
            if last is not None:
                head, latest = last.commit_id, last.changeset
            else:
                latest = self.changeset_map.last_changeset(validate=validate)
                head = (
                    self.changeset_map.get_commit(latest)
                    if latest is not None
                    else None
                )
            return FetchReport(
                status=status,
                server_path=server_path,
                results=results,
                fetch_head=head,
                latest_changeset=latest,
                error_kind=error.kind if error else None,
                error=str(error) if error else None,
                failed_changeset=failed,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc).isoformat(),
            )

        try:
            changesets = self._resolve_range()
        except _EXPECTED_ERRORS as exc:
            logger.error(
                "Could not resolve changesets to fetch: %s",
                exc,
                extra={"context": exc.context},
            )
            self.machine.advance(FetchState.ABORTED)
            return report(FetchStatus.FAILED, exc)
        self.machine.advance(FetchState.RANGE_RESOLVED)

        if not changesets:
            logger.info("%s is already fetched", server_path)
            self.machine.advance(FetchState.DONE)
            return report(FetchStatus.ALREADY_FETCHED)

        logger.info(
            "Fetching %d changeset(s) of %s (%d..%d)",
            len(changesets),
            server_path,
            changesets[0],
            changesets[-1],
        )
        for changeset_id in changesets:
            try:
                if self.cancel_token.cancelled:
                    raise TaskCancelled(
                        "Fetch cancelled", changeset=changeset_id
                    )
                results.append(self._fetch_changeset(changeset_id))
            except _EXPECTED_ERRORS + _MAPPING_ERRORS as exc:
                logger.error(
                    "Fetch of changeset %d failed: %s",
                    changeset_id,
                    exc,
                    extra={"context": exc.context},
                )
                self.machine.advance(FetchState.ABORTED)
                status = FetchStatus.PARTIAL if results else FetchStatus.FAILED
                return report(status, exc, failed=changeset_id)

        self.machine.advance(FetchState.DONE)
        return report(FetchStatus.OK)

    # ------------------------------------------------------------------
    # Range
    # ------------------------------------------------------------------

    def _resolve_range(self) -> list[int]:
        server_path = self.config.server_path
        last = self.changeset_map.last_changeset(validate=self.store.has_commit)

        if self.options.target_changeset is not None:
            tip = self.version_control.get_changeset(
                self.options.target_changeset
            ).changeset_id
        else:
            tip = self.version_control.latest_changeset(server_path)
        if tip is None:
            logger.warning("%s has no history", server_path)
            return []

        if last is not None and tip <= last:
            if self.options.force and tip == last:
                logger.info("Re-fetching changeset %d (forced)", tip)
                return [tip]
            return []

        if not self.deep:
            return [tip]
        history = self.version_control.query_history(
            server_path,
            version_from=(last or 0) + 1,
            version_to=tip,
            ascending=True,
        )
        changesets = [c.changeset_id for c in history]
        if self.options.limit is not None:
            changesets = changesets[-self.options.limit:]
        return changesets

    # ------------------------------------------------------------------
    # One changeset
    # ------------------------------------------------------------------

    def _fetch_changeset(self, changeset_id: int) -> FetchResult:
        validate = self.store.has_commit
        root = self.config.server_path
        high_water_mark = self.changeset_map.high_water_mark
        if (
            changeset_id not in self.changeset_map
            and changeset_id <= high_water_mark
        ):
            raise OutOfOrderChangeset(
                "Unmapped changeset is below the high-water mark",
                changeset=changeset_id,
                high_water_mark=high_water_mark,
            )
        self.machine.advance(FetchState.DOWNLOADING)

        parent_changeset = self.changeset_map.previous_changeset(
            changeset_id, validate=validate
        )
        parent_commit = (
            self.changeset_map.get_commit(parent_changeset)
            if parent_changeset is not None
            else None
        )
        parent_files = (
            self.store.read_snapshot(parent_commit).files()
            if parent_commit is not None
            else {}
        )

        changeset = self.version_control.get_changeset(changeset_id)
        items = self.version_control.get_items(root, version=changeset_id)

        files: dict[str, str] = {}
        downloads: list[tuple[str, RemoteItem]] = []
        for item in items:
            if item.is_directory:
                continue
            relative = to_relative(root, item.path)
            reused = parent_files.get(relative)
            if (
                reused is not None
                and parent_changeset is not None
                and item.changeset_id <= parent_changeset
            ):
                files[relative] = reused
            else:
                downloads.append((relative, item))

        try:
            contents = download_all_blocking(
                self.version_control.download_file,
                [item for _, item in downloads],
                self.options.max_parallel_downloads,
            )
        except RemoteError as exc:
            raise DownloadFailed(
                "Could not download changeset contents",
                changeset=changeset_id,
                path=exc.context.get("path"),
            ) from exc
        logger.debug(
            "Changeset %d: downloaded %d, reused %d",
            changeset_id,
            len(downloads),
            len(files),
        )

        self.machine.advance(FetchState.TRANSLATING)
        for (relative, _), data in zip(downloads, contents):
            files[relative] = self.store.write_blob(data)
        snapshot = TreeSnapshot.from_entries(
            TreeEntry(path=path, content_id=content_id)
            for path, content_id in files.items()
        )
        author = changeset_author(changeset, self.identity)
        committer = changeset_committer(changeset, self.identity)
        message = changeset.comment or f"Changeset {changeset_id}"

        self.machine.advance(FetchState.COMMITTING)
        commit_id = self.store.create_commit(
            snapshot,
            [parent_commit] if parent_commit else [],
            author,
            committer,
            message,
            changeset.created,
        )

        self.machine.advance(FetchState.MAPPED)
        if changeset_id in self.changeset_map:
            logger.info(
                "Changeset %d is already mapped; created unmapped commit %s",
                changeset_id,
                commit_id[:12],
            )
        else:
            self.changeset_map.append(changeset_id, commit_id)
            if self.config.tag:
                self.store.tag(f"TFS_C{changeset_id}", commit_id)
        self.store.update_ref("FETCH_HEAD", commit_id)
        return FetchResult(
            changeset=changeset_id,
            commit_id=commit_id,
            downloaded=len(downloads),
        )
