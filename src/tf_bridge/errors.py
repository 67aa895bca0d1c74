"""Error kinds raised and reported by the bridge core.

Every error carries an ``ErrorKind`` plus a ``context`` dict (changeset,
commit id, path, ...) so callers can point the user at the exact item
that needs manual attention.

Two families exist:

* **Invariant violations** (``DuplicateChangeset``, ``OutOfOrderChangeset``,
  ``UnsupportedFormat``) always propagate as exceptions.
* **Expected outcomes** (``OutOfDateLocalHistory``, ``CheckinConflict``,
  ``PolicyRejected``, identity failures, ``DownloadFailed``) are raised
  inside a task and converted into report values at the task boundary
  (see ``CheckinReport`` / ``FetchReport``).
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable error categories carried in task reports."""

    NOT_CONFIGURED = "not_configured"
    UNSUPPORTED_FORMAT = "unsupported_format"
    MIGRATION_REFUSED = "migration_refused"
    OUT_OF_DATE_LOCAL_HISTORY = "out_of_date_local_history"
    CHECKIN_CONFLICT = "checkin_conflict"
    POLICY_REJECTED = "policy_rejected"
    DUPLICATE_CHANGESET = "duplicate_changeset"
    OUT_OF_ORDER_CHANGESET = "out_of_order_changeset"
    IDENTITY_NOT_FOUND = "identity_not_found"
    AMBIGUOUS_IDENTITY = "ambiguous_identity"
    DOWNLOAD_FAILED = "download_failed"
    TRANSIENT_REMOTE = "transient_remote"
    REMOTE = "remote"
    CASE_COLLISION = "case_collision"
    INVALID_ITEM_PATH = "invalid_item_path"
    SHELVESET_EXISTS = "shelveset_exists"
    SHELVESET_NOT_FOUND = "shelveset_not_found"
    AMBIGUOUS_SHELVESET = "ambiguous_shelveset"
    ALREADY_CONFIGURED = "already_configured"
    NOT_A_FOLDER = "not_a_folder"
    REPOSITORY_LOCKED = "repository_locked"
    CANCELLED = "cancelled"
    INVALID_STATE = "invalid_state"


class BridgeError(Exception):
    """Base class for all bridge errors.

    Args:
        message: Human-readable description.
        **context: Identifiers that locate the failure (``changeset``,
            ``commit``, ``path``, ...).
    """

    kind: ErrorKind = ErrorKind.REMOTE

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {
            k: v for k, v in context.items() if v is not None
        }

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(
            f"{key}={value}" for key, value in sorted(self.context.items())
        )
        return f"{self.message} ({details})"


# ---------------------------------------------------------------------------
# Configuration / persisted format
# ---------------------------------------------------------------------------


class NotConfigured(BridgeError):
    """The repository has no bridge configuration."""

    kind = ErrorKind.NOT_CONFIGURED


class UnsupportedFormat(BridgeError):
    """Persisted data was written by a newer, incompatible version."""

    kind = ErrorKind.UNSUPPORTED_FORMAT


class MigrationRefused(BridgeError):
    """A format migration would clobber existing data and was not started."""

    kind = ErrorKind.MIGRATION_REFUSED


class RepositoryLocked(BridgeError):
    """Another task already holds the repository lock."""

    kind = ErrorKind.REPOSITORY_LOCKED


class AlreadyConfigured(BridgeError):
    """A clone target already carries a bridge configuration."""

    kind = ErrorKind.ALREADY_CONFIGURED


class NotAFolder(BridgeError):
    """The server path is missing or names a file."""

    kind = ErrorKind.NOT_A_FOLDER


# ---------------------------------------------------------------------------
# Mapping store invariants
# ---------------------------------------------------------------------------


class DuplicateChangeset(BridgeError):
    """The changeset (or, in linear mode, the commit) is already mapped."""

    kind = ErrorKind.DUPLICATE_CHANGESET


class OutOfOrderChangeset(BridgeError):
    """The changeset is not above the current high-water mark."""

    kind = ErrorKind.OUT_OF_ORDER_CHANGESET


# ---------------------------------------------------------------------------
# Checkin / fetch outcomes
# ---------------------------------------------------------------------------


class OutOfDateLocalHistory(BridgeError):
    """The server path advanced since the last synchronized changeset."""

    kind = ErrorKind.OUT_OF_DATE_LOCAL_HISTORY


class CheckinConflict(BridgeError):
    """Someone else checked in while changes were being staged."""

    kind = ErrorKind.CHECKIN_CONFLICT


class PolicyRejected(BridgeError):
    """A checkin policy or gated build denied the checkin."""

    kind = ErrorKind.POLICY_REJECTED


class DownloadFailed(BridgeError):
    """Item content could not be retrieved while fetching a changeset."""

    kind = ErrorKind.DOWNLOAD_FAILED


class CaseCollision(BridgeError):
    """Two paths in a commit differ only by case."""

    kind = ErrorKind.CASE_COLLISION


class InvalidItemPath(BridgeError):
    """A path in a commit cannot exist as a server item."""

    kind = ErrorKind.INVALID_ITEM_PATH


class ShelvesetExists(BridgeError):
    """A shelveset with this name already exists and replacing was not asked."""

    kind = ErrorKind.SHELVESET_EXISTS


class ShelvesetNotFound(BridgeError):
    """No shelveset matches the given name (and owner)."""

    kind = ErrorKind.SHELVESET_NOT_FOUND


class AmbiguousShelveset(BridgeError):
    """Several owners have a shelveset with this name.

    Args:
        message: Human-readable description.
        owners: Owners of the matching shelvesets.
    """

    kind = ErrorKind.AMBIGUOUS_SHELVESET

    def __init__(self, message: str, owners: list[str], **context: Any) -> None:
        super().__init__(message, **context)
        self.owners = list(owners)


class TaskCancelled(BridgeError):
    """The task stopped at a checkpoint because cancellation was requested."""

    kind = ErrorKind.CANCELLED


class InvalidTransition(BridgeError):
    """A task state machine was driven through a transition it forbids."""

    kind = ErrorKind.INVALID_STATE


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class IdentityNotFound(BridgeError):
    """No remote identity matches a local author."""

    kind = ErrorKind.IDENTITY_NOT_FOUND


class AmbiguousIdentity(BridgeError):
    """More than one remote identity matches a local author.

    Args:
        message: Human-readable description.
        candidates: Unique names of the matching identities.
    """

    kind = ErrorKind.AMBIGUOUS_IDENTITY

    def __init__(
        self, message: str, candidates: list[str], **context: Any
    ) -> None:
        super().__init__(message, **context)
        self.candidates = list(candidates)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class RemoteError(BridgeError):
    """Non-retriable error returned by the remote service."""

    kind = ErrorKind.REMOTE


class TransientRemoteError(RemoteError):
    """Network-level or 5xx failure; retried a bounded number of times."""

    kind = ErrorKind.TRANSIENT_REMOTE
