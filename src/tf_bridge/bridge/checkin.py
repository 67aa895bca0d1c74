"""Check local commits in as server changesets.

``CheckinTask.run()`` walks the state table below once per commit (deep
mode) or once for the squashed range (shallow mode)::

    INIT -> VALIDATING -> PENDING -> COMMITTING -> MAPPED -> DONE
                 ^                        |           |
                 +---- conflict retry ----+           |
                 +------------ next commit -----------+

Any non-terminal state can move to ABORTED.

Expected outcomes (server moved on, conflict, policy rejection, identity
problems) end up in the returned ``CheckinReport``; mapping invariant
violations propagate as exceptions. Commits mapped before a failure stay
mapped and are reported as partial progress.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from tf_bridge.bridge.identity import IdentityResolver
from tf_bridge.bridge.machine import CancellationToken, StateMachine
from tf_bridge.bridge.models import (
    ChangeKind,
    CheckinReport,
    CheckinResult,
    CheckinStatus,
    CommitInfo,
    PendingChange,
    RemoteIdentity,
    TreeSnapshot,
)
from tf_bridge.bridge.paths import combine
from tf_bridge.bridge.pending import PendingChangeComputer, validate_snapshot
from tf_bridge.bridge.state import ChangesetCommitMap
from tf_bridge.config_schema import (
    BridgeConfig,
    RenameMode,
    RepositoryConfiguration,
)
from tf_bridge.core.interfaces import (
    LocalObjectStore,
    LockLevel,
    RemoteVersionControlService,
    RemoteWorkspaceService,
)
from tf_bridge.errors import (
    AmbiguousIdentity,
    BridgeError,
    CaseCollision,
    CheckinConflict,
    ErrorKind,
    IdentityNotFound,
    InvalidItemPath,
    InvalidTransition,
    OutOfDateLocalHistory,
    PolicyRejected,
    RemoteError,
    TaskCancelled,
)
from tf_bridge.file_handler import detect_encoding
from tf_bridge.validators import validate_item_path

logger = logging.getLogger(__name__)


class CheckinState(str, Enum):
    INIT = "init"
    VALIDATING = "validating"
    PENDING = "pending"
    COMMITTING = "committing"
    MAPPED = "mapped"
    DONE = "done"
    ABORTED = "aborted"


_S = CheckinState
CHECKIN_TRANSITIONS: dict[CheckinState, frozenset[CheckinState]] = {
    _S.INIT: frozenset({_S.VALIDATING, _S.ABORTED}),
    # DONE straight from VALIDATING when there is nothing to check in
    _S.VALIDATING: frozenset({_S.PENDING, _S.DONE, _S.ABORTED}),
    # PENDING -> VALIDATING / DONE only in preview or for an empty commit
    _S.PENDING: frozenset({_S.COMMITTING, _S.VALIDATING, _S.DONE, _S.ABORTED}),
    _S.COMMITTING: frozenset({_S.MAPPED, _S.VALIDATING, _S.ABORTED}),
    _S.MAPPED: frozenset({_S.VALIDATING, _S.DONE, _S.ABORTED}),
    _S.DONE: frozenset(),
    _S.ABORTED: frozenset(),
}

# Raised inside the task and turned into report values
_EXPECTED_ERRORS = (
    OutOfDateLocalHistory,
    CheckinConflict,
    PolicyRejected,
    IdentityNotFound,
    AmbiguousIdentity,
    CaseCollision,
    InvalidItemPath,
    RemoteError,
    TaskCancelled,
)


class CheckinOptions(BaseModel):
    """Per-run checkin options.

    ``None`` values fall back to the repository configuration.
    """

    deep: bool | None = None
    keep_author: bool | None = None
    include_metadata: bool | None = None
    comment: str | None = None
    work_items: list[int] = []
    policy_override: str | None = None
    lock: bool = True
    preview: bool = False
    rename_mode: RenameMode = RenameMode.FILES
    max_conflict_retries: int = Field(default=3, ge=0)
    max_comment_rollup: int = Field(default=20, ge=1)

    model_config = {"frozen": True}

    @classmethod
    def from_config(cls, bridge: BridgeConfig, **overrides) -> CheckinOptions:
        values = {
            "lock": bridge.lock,
            "rename_mode": bridge.rename_mode,
            "max_conflict_retries": bridge.max_conflict_retries,
            "max_comment_rollup": bridge.max_comment_rollup,
        }
        values.update(overrides)
        return cls(**values)


def metadata_block(commit: CommitInfo) -> str:
    """Commit header appended to checkin comments.

    The commit id in here is what ``ChangesetCommitMap.repair`` looks for.
    """
    lines = [f"commit {commit.commit_id}", f"Author: {commit.author}"]
    if commit.time is not None:
        lines.append(f"Date:   {commit.time.isoformat()}")
    return "\n".join(lines)


def build_comment(
    commits: list[CommitInfo],
    include_metadata: bool = False,
    max_rollup: int = 20,
) -> str:
    """Checkin comment for one commit or a squashed range (oldest first)."""
    head = commits[-1]
    if len(commits) == 1:
        comment = head.message.strip()
    else:
        lines = [f"Checked in {len(commits)} commits:", ""]
        shown = commits[-max_rollup:]
        lines += [f"{c.commit_id[:10]} {c.summary}" for c in shown]
        if len(commits) > len(shown):
            lines.append(f"... and {len(commits) - len(shown)} earlier commits")
        comment = "\n".join(lines)
    if include_metadata:
        comment = f"{comment}\n\n{metadata_block(head)}" if comment else metadata_block(head)
    return comment


def check_item_paths(changes: list[PendingChange]) -> None:
    """Reject names the server cannot store before anything is pended."""
    for change in changes:
        if change.kind == ChangeKind.DELETE:
            continue
        path = change.target_path or change.source_path
        ok, reason = validate_item_path(path)
        if not ok:
            raise InvalidItemPath(reason, path=path)


def stage_changes(
    workspace: RemoteWorkspaceService,
    store: LocalObjectStore,
    root: str,
    changes: list[PendingChange],
    lock: LockLevel = LockLevel.NONE,
) -> None:
    """Pend an edit script of relative paths against server folder *root*."""
    check_item_paths(changes)
    for change in changes:
        server_path = combine(root, change.source_path)
        if change.kind in (ChangeKind.ADD, ChangeKind.EDIT):
            if change.is_directory:
                # Folders are created with the first file pended below them
                logger.debug("Skipping folder add %s", server_path)
                continue
            content = store.read_blob(change.content_id or "")
            encoding = detect_encoding(content)
            if change.kind == ChangeKind.ADD:
                workspace.pend_add(server_path, content, encoding, lock)
            else:
                workspace.pend_edit(server_path, content, encoding, lock)
        elif change.kind == ChangeKind.DELETE:
            workspace.pend_delete(server_path, lock)
        else:
            workspace.pend_rename(
                server_path, combine(root, change.target_path or ""), lock
            )


class _Unit:
    """One checkin: the commit to map plus the commits squashed into it."""

    def __init__(self, commit_id: str, commits: list[CommitInfo]) -> None:
        self.commit_id = commit_id
        self.commits = commits

    @property
    def head(self) -> CommitInfo:
        return self.commits[-1]


class CheckinTask:
    """Turn local commits into server changesets.

    Args:
        config: Repository configuration (server path, depth, flags).
        changeset_map: The repository's mapping store.
        store: Local object store.
        version_control: Remote history access (validation).
        workspace: Remote staging/commit service.
        identity: Resolver used when commit authors are kept.
        options: Per-run options.
        cancel_token: Optional cooperative cancellation flag.
    """

    def __init__(
        self,
        config: RepositoryConfiguration,
        changeset_map: ChangesetCommitMap,
        store: LocalObjectStore,
        version_control: RemoteVersionControlService,
        workspace: RemoteWorkspaceService,
        identity: IdentityResolver | None = None,
        options: CheckinOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.config = config
        self.changeset_map = changeset_map
        self.store = store
        self.version_control = version_control
        self.workspace = workspace
        self.identity = identity
        self.options = options or CheckinOptions()
        self.cancel_token = cancel_token or CancellationToken()
        self.computer = PendingChangeComputer(self.options.rename_mode)
        self.machine: StateMachine[CheckinState] = StateMachine(
            "checkin", CHECKIN_TRANSITIONS, CheckinState.INIT
        )

    # ------------------------------------------------------------------
    # Option resolution
    # ------------------------------------------------------------------

    @property
    def deep(self) -> bool:
        if self.options.deep is not None:
            return self.options.deep
        return self.config.deep

    @property
    def keep_author(self) -> bool:
        if self.options.keep_author is not None:
            return self.options.keep_author
        return self.config.keep_author

    @property
    def include_metadata(self) -> bool:
        if self.options.include_metadata is not None:
            return self.options.include_metadata
        return self.config.include_metadata

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(self, commit_id: str | None = None) -> CheckinReport:
        """Check in *commit_id* (default: HEAD) and its unsynchronized ancestors."""
        started_at = datetime.now(timezone.utc).isoformat()
        results: list[CheckinResult] = []
        server_path = self.config.server_path

        def report(
            status: CheckinStatus, error: BridgeError | None = None
        ) -> CheckinReport:
            return CheckinReport(
                status=status,
                server_path=server_path,
                results=results,
                error_kind=error.kind if error else None,
                error=str(error) if error else None,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc).isoformat(),
            )

        self.machine.advance(CheckinState.VALIDATING)
        try:
            head = commit_id or self.store.head()
            if head is None:
                raise InvalidTransition("Nothing to check in: no HEAD commit")
            if self.changeset_map.get_changeset(head) is not None:
                logger.info("Commit %s is already checked in", head[:12])
                self.machine.advance(CheckinState.DONE)
                return report(CheckinStatus.UP_TO_DATE)
            units = self._plan(head)
        except _EXPECTED_ERRORS as exc:
            logger.error(
                "Checkin validation failed: %s",
                exc,
                extra={"context": exc.context},
            )
            self.machine.advance(CheckinState.ABORTED)
            return report(CheckinStatus.FAILED, exc)

        if self.keep_author and self.identity is not None:
            self.identity.add_local_authors(
                c.author for unit in units for c in unit.commits
            )
            self.identity.search_remote()

        expected_tip = self.changeset_map.last_changeset(
            validate=self.store.has_commit
        )
        for index, unit in enumerate(units):
            if index > 0:
                self.machine.advance(CheckinState.VALIDATING)
            try:
                if self.cancel_token.cancelled:
                    raise TaskCancelled(
                        "Checkin cancelled", commit=unit.commit_id
                    )
                result = self._check_in_unit(unit, expected_tip)
            except _EXPECTED_ERRORS as exc:
                logger.error(
                    "Checkin of commit %s failed: %s",
                    unit.commit_id[:12],
                    exc,
                    extra={"context": exc.context},
                )
                results.append(
                    CheckinResult(
                        commit_id=unit.commit_id,
                        error_kind=exc.kind,
                        error=str(exc),
                    )
                )
                self.machine.advance(CheckinState.ABORTED)
                status = (
                    CheckinStatus.PARTIAL
                    if any(r.changeset is not None for r in results)
                    else CheckinStatus.FAILED
                )
                return report(status, exc)
            results.append(result)
            if result.changeset is not None:
                expected_tip = result.changeset

        self.machine.advance(CheckinState.DONE)
        if self.options.preview:
            return report(CheckinStatus.PREVIEW)
        if not any(r.changeset is not None for r in results):
            return report(CheckinStatus.UP_TO_DATE)
        return report(CheckinStatus.OK)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _plan(self, head: str) -> list[_Unit]:
        """Validate the starting point and split the range into units."""
        last = self.changeset_map.last_changeset(validate=self.store.has_commit)
        server_path = self.config.server_path

        if last is None:
            # First checkin: only into an empty server folder
            items = self.version_control.get_items(server_path)
            if any(not item.is_directory for item in items):
                raise OutOfDateLocalHistory(
                    "The server path is not empty; fetch it before checking in",
                    path=server_path,
                )
            base_commit = None
        else:
            self._check_remote_tip(last)
            base_commit = self.changeset_map.get_commit(last)

        chain = self.store.commits_between(base_commit, head)
        if not chain:
            raise OutOfDateLocalHistory(
                "No commits to check in", commit=head, path=server_path
            )
        first = self.store.read_commit(chain[0])
        if base_commit is not None and (
            not first.parents or first.parents[0] != base_commit
        ):
            raise OutOfDateLocalHistory(
                "The commit does not descend from the last synchronized "
                "commit; merge the fetched history first",
                commit=head,
                changeset=last,
            )

        commits = [self.store.read_commit(c) for c in chain]
        if self.deep:
            return [_Unit(c.commit_id, [c]) for c in commits]
        return [_Unit(head, commits)]

    def _check_remote_tip(self, expected: int | None) -> None:
        history = self.version_control.query_history(
            self.config.server_path, max_count=1
        )
        tip = history[0].changeset_id if history else None
        if tip is not None and (expected is None or tip > expected):
            raise OutOfDateLocalHistory(
                "The server path has changed since the last fetch",
                path=self.config.server_path,
                changeset=tip,
                last_synchronized=expected,
            )

    # ------------------------------------------------------------------
    # One unit
    # ------------------------------------------------------------------

    def _base_snapshot(self, unit: _Unit) -> TreeSnapshot:
        parents = unit.commits[0].parents
        if not parents:
            return TreeSnapshot()
        return self.store.read_snapshot(parents[0])

    def _check_in_unit(
        self, unit: _Unit, expected_tip: int | None
    ) -> CheckinResult:
        base = self._base_snapshot(unit)
        target = self.store.read_snapshot(unit.commit_id)
        attempts = 0

        while True:
            if expected_tip is not None:
                self._check_remote_tip(expected_tip)
            self.machine.advance(CheckinState.PENDING)

            validate_snapshot(target)
            changes = self.computer.compute_edits(base, target)
            author = self._resolve_author(unit.head)

            if self.options.preview or not changes:
                if not changes:
                    logger.info(
                        "Commit %s has no changes to check in",
                        unit.commit_id[:12],
                    )
                return CheckinResult(commit_id=unit.commit_id, changes=changes)

            try:
                self._stage(changes)
                self.machine.advance(CheckinState.COMMITTING)
                changeset = self.workspace.check_in(
                    self.workspace.get_pending_changes(),
                    author,
                    build_comment(
                        unit.commits,
                        self.include_metadata,
                        self.options.max_comment_rollup,
                    )
                    if self.options.comment is None
                    else self.options.comment,
                    self.options.work_items,
                    self.options.policy_override,
                )
            except CheckinConflict as exc:
                self._undo()
                attempts += 1
                if attempts > self.options.max_conflict_retries:
                    raise CheckinConflict(
                        f"Checkin still conflicting after {attempts} attempts",
                        commit=unit.commit_id,
                        path=exc.context.get("path"),
                    ) from exc
                logger.warning(
                    "Checkin conflict for commit %s (attempt %d/%d), revalidating",
                    unit.commit_id[:12],
                    attempts,
                    self.options.max_conflict_retries,
                )
                self.machine.advance(CheckinState.VALIDATING)
                continue
            except BaseException:
                self._undo()
                raise

            self.machine.advance(CheckinState.MAPPED)
            self.changeset_map.append(changeset, unit.commit_id)
            if self.config.tag:
                self.store.tag(f"TFS_C{changeset}", unit.commit_id)
            logger.info(
                "Checked in commit %s as changeset %d",
                unit.commit_id[:12],
                changeset,
            )
            return CheckinResult(
                commit_id=unit.commit_id, changeset=changeset, changes=changes
            )

    def _resolve_author(self, commit: CommitInfo) -> RemoteIdentity | None:
        if not self.keep_author:
            return None
        if self.identity is None:
            raise IdentityNotFound(
                "Keeping authors requires an identity resolver",
                author=str(commit.author),
            )
        return self.identity.resolve(commit.author)

    def _lock_level(self) -> LockLevel:
        return LockLevel.CHECKIN if self.options.lock else LockLevel.NONE

    def _stage(self, changes: list[PendingChange]) -> None:
        stage_changes(
            self.workspace,
            self.store,
            self.config.server_path,
            changes,
            self._lock_level(),
        )

    def _undo(self) -> None:
        undone = self.workspace.undo()
        logger.debug("Undid %d pending changes", undone)
