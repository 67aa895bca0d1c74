"""Git <-> TFS synchronization core.

Keeps a durable changeset <-> commit mapping for one server path and
translates history in both directions.

Modules:

- ``models``        -- pydantic data contracts (entries, snapshots,
  pending changes, identities, reports).
- ``paths``         -- server/relative path helpers and ``common_prefix``.
- ``state``         -- ``ChangesetCommitMap``: the persisted mapping.
- ``configuration`` -- ``ConfigurationStore``: ``tf/config.yml``.
- ``upgrade``       -- ``UpgradeManager``: on-disk format migrations.
- ``identity``      -- ``IdentityResolver``: author <-> TFS user mapping.
- ``pending``       -- ``PendingChangeComputer``: tree diff to edit script.
- ``machine``       -- task state machines and cancellation.
- ``checkin``       -- ``CheckinTask``: commits to changesets.
- ``fetch``         -- ``FetchTask``: changesets to commits.
- ``shelve``        -- ``ShelveTask`` / ``UnshelveTask``: shelvesets.
- ``clone``         -- ``CloneTask``: configure and fetch a new repository.
- ``repository``    -- ``BridgeRepository``: open, lock and run tasks.
- ``reporter``      -- human-readable and JSON report formatting.

Usage example
-------------
::

    from pathlib import Path
    from tf_bridge.config import load_config
    from tf_bridge.core.client import TfsClient, TfsWorkspace
    from tf_bridge.core.git_store import GitObjectStore
    from tf_bridge.bridge import BridgeRepository, format_fetch_report

    client = TfsClient(load_config())
    store = GitObjectStore.open(Path("."))
    repo = BridgeRepository.open(store.git_dir, store, identity_service=client)

    report = repo.fetch(client)
    print(format_fetch_report(report))

    report = repo.check_in(client, TfsWorkspace(client))
"""

# models first: core.client imports it while this package initializes
from .models import (
    ChangeKind,
    ChangesetCommitMapEntry,
    CheckinReport,
    CheckinResult,
    CheckinStatus,
    FetchReport,
    FetchResult,
    FetchStatus,
    LocalAuthor,
    PendingChange,
    RemoteIdentity,
    Shelveset,
    ShelveReport,
    ShelveStatus,
    TreeEntry,
    TreeSnapshot,
    UnshelveResult,
)
from .checkin import CheckinOptions, CheckinTask
from .clone import CloneOptions, CloneTask
from .configuration import ConfigurationStore
from .fetch import FetchOptions, FetchTask
from .identity import IdentityResolver
from .machine import CancellationToken
from .pending import PendingChangeComputer, apply_edits, compute_edits
from .reporter import (
    format_checkin_report,
    format_fetch_report,
    format_shelve_report,
    format_shelvesets,
    report_to_json,
)
from .repository import BridgeRepository, RepositoryLock
from .shelve import (
    ShelveOptions,
    ShelvesetSort,
    ShelveTask,
    UnshelveTask,
)
from .state import ChangesetCommitMap
from .upgrade import UpgradeManager

__all__ = [
    "BridgeRepository",
    "CancellationToken",
    "ChangeKind",
    "ChangesetCommitMap",
    "ChangesetCommitMapEntry",
    "CheckinOptions",
    "CheckinReport",
    "CheckinResult",
    "CheckinStatus",
    "CheckinTask",
    "CloneOptions",
    "CloneTask",
    "ConfigurationStore",
    "FetchOptions",
    "FetchReport",
    "FetchResult",
    "FetchStatus",
    "FetchTask",
    "IdentityResolver",
    "LocalAuthor",
    "PendingChange",
    "PendingChangeComputer",
    "RemoteIdentity",
    "RepositoryLock",
    "ShelveOptions",
    "ShelveReport",
    "ShelveStatus",
    "ShelveTask",
    "Shelveset",
    "ShelvesetSort",
    "TreeEntry",
    "TreeSnapshot",
    "UnshelveResult",
    "UnshelveTask",
    "UpgradeManager",
    "apply_edits",
    "compute_edits",
    "format_checkin_report",
    "format_fetch_report",
    "format_shelve_report",
    "format_shelvesets",
    "report_to_json",
]
