"""Open-repository facade.

``BridgeRepository.open()`` is the single entry point for tasks: it runs
the format upgrade once, loads the configuration, the changeset map and
the user map, and runs each task under the repository's exclusive lock
file (``tf/.lock``). ``configure``, ``unconfigure`` and ``clone`` set a
repository up (or take it down) without opening it.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from pathlib import Path
from typing import Callable

from tf_bridge.bridge import shelve as shelving
from tf_bridge.bridge.checkin import CheckinOptions, CheckinTask
from tf_bridge.bridge.clone import CloneOptions, CloneTask
from tf_bridge.bridge.configuration import ConfigurationStore
from tf_bridge.bridge.fetch import FetchOptions, FetchTask
from tf_bridge.bridge.identity import IdentityResolver
from tf_bridge.bridge.machine import CancellationToken
from tf_bridge.bridge.models import (
    ChangesetCommitMapEntry,
    CheckinReport,
    FetchReport,
    Shelveset,
    ShelveReport,
    UnshelveResult,
)
from tf_bridge.bridge.paths import to_relative
from tf_bridge.bridge.state import ChangesetCommitMap
from tf_bridge.bridge.upgrade import UpgradeManager
from tf_bridge.config_schema import (
    CURRENT_FORMAT_VERSION,
    RepositoryConfiguration,
)
from tf_bridge.core.interfaces import (
    LocalObjectStore,
    RemoteIdentityService,
    RemoteVersionControlService,
    RemoteWorkspaceService,
)
from tf_bridge.errors import RepositoryLocked

logger = logging.getLogger(__name__)


def _digest_matches(content_id: str | None, digest: bytes) -> bool:
    """Compare a server content hash (hex or base64 MD5) with *digest*."""
    if not content_id:
        return False
    if content_id.lower() == digest.hex():
        return True
    try:
        return base64.b64decode(content_id, validate=True) == digest
    except ValueError:
        return False


class RepositoryLock:
    """Exclusive lock file created with ``O_CREAT | O_EXCL``.

    The file holds the owning process id for diagnostics.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            RepositoryLocked: The lock file already exists.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.path.read_text(encoding="utf-8").strip() or None
            raise RepositoryLocked(
                "Another task is running on this repository",
                path=str(self.path),
                pid=holder,
            ) from None
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(f"{os.getpid()}\n")
        self._held = True
        logger.debug("Acquired %s", self.path)

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False
        logger.debug("Released %s", self.path)

    def __enter__(self) -> RepositoryLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class BridgeRepository:
    """A repository configured for synchronization with one server path.

    Use ``open()`` rather than the constructor.
    """

    def __init__(
        self,
        config_store: ConfigurationStore,
        config: RepositoryConfiguration,
        changeset_map: ChangesetCommitMap,
        store: LocalObjectStore,
        identity: IdentityResolver,
    ) -> None:
        self.config_store = config_store
        self.config = config
        self.changeset_map = changeset_map
        self.store = store
        self.identity = identity

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @staticmethod
    def configure(
        git_dir: Path,
        server_uri: str,
        server_path: str,
        **settings,
    ) -> RepositoryConfiguration:
        """Create or update the repository configuration.

        An existing configuration keeps the settings not given here; the
        changeset map is never touched.
        """
        config_store = ConfigurationStore(git_dir)
        if config_store.exists():
            UpgradeManager(config_store).upgrade_if_necessary()
            current = config_store.load()
            config = RepositoryConfiguration(
                **{
                    **current.model_dump(),
                    "server_uri": server_uri,
                    "server_path": server_path,
                    **settings,
                }
            )
            logger.info("Updating configuration in %s", config_store.config_path)
        else:
            config = RepositoryConfiguration(
                server_uri=server_uri,
                server_path=server_path,
                format_version=CURRENT_FORMAT_VERSION,
                **settings,
            )
            logger.info("Writing configuration to %s", config_store.config_path)
        config_store.save(config)
        return config

    @staticmethod
    def unconfigure(git_dir: Path) -> None:
        """Remove the bridge configuration.

        The changeset map stays, so configuring the same server path again
        picks the history up where it left off.

        Raises:
            NotConfigured: The repository has no bridge configuration.
            RepositoryLocked: A task is running on the repository.
        """
        config_store = ConfigurationStore(git_dir)
        UpgradeManager(config_store).upgrade_if_necessary()
        with RepositoryLock(config_store.lock_path):
            config_store.remove()
        logger.info("Removed configuration from %s", config_store.config_path)

    @staticmethod
    def clone(
        git_dir: Path,
        store: LocalObjectStore,
        version_control: RemoteVersionControlService,
        server_uri: str,
        server_path: str,
        options: CloneOptions | None = None,
        identity_service: RemoteIdentityService | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> FetchReport:
        """Configure *git_dir* for *server_path* and fetch its history.

        Raises:
            AlreadyConfigured: The repository is already bridged.
            NotAFolder: The server path is missing or is a file.
        """
        with RepositoryLock(ConfigurationStore(git_dir).lock_path):
            return CloneTask(
                git_dir,
                store,
                version_control,
                server_uri,
                server_path,
                identity=IdentityResolver(identity_service, None),
                options=options,
                cancel_token=cancel_token,
            ).run()

    @classmethod
    def open(
        cls,
        git_dir: Path,
        store: LocalObjectStore,
        identity_service: RemoteIdentityService | None = None,
    ) -> BridgeRepository:
        """Open a configured repository, upgrading its metadata first.

        Raises:
            NotConfigured: The repository has no bridge configuration.
            UnsupportedFormat: The metadata is newer than this version.
            MigrationRefused: An upgrade would overwrite existing data.
        """
        config_store = ConfigurationStore(git_dir)
        migrated = UpgradeManager(config_store).upgrade_if_necessary()
        if migrated:
            logger.info(
                "Upgraded repository metadata from format(s) %s",
                ", ".join(str(v) for v in migrated),
            )
        config = config_store.load()
        changeset_map = ChangesetCommitMap(
            config_store.map_path, linear=not config.deep
        )

        user_map = cls._user_map_path(git_dir, config)
        identity = IdentityResolver(identity_service, user_map)
        if user_map is not None and user_map.exists():
            identity.load()
        return cls(config_store, config, changeset_map, store, identity)

    @staticmethod
    def _user_map_path(
        git_dir: Path, config: RepositoryConfiguration
    ) -> Path | None:
        if not config.user_map:
            return None
        path = Path(config.user_map).expanduser()
        if not path.is_absolute():
            # Relative to the work tree
            path = git_dir.parent / path
        return path

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def lock(self) -> RepositoryLock:
        return RepositoryLock(self.config_store.lock_path)

    def check_in(
        self,
        version_control: RemoteVersionControlService,
        workspace: RemoteWorkspaceService,
        commit_id: str | None = None,
        options: CheckinOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CheckinReport:
        """Run a ``CheckinTask`` under the repository lock."""
        with self.lock():
            self.changeset_map.reload()
            self._repair(version_control)
            task = CheckinTask(
                self.config,
                self.changeset_map,
                self.store,
                version_control,
                workspace,
                identity=self.identity,
                options=options,
                cancel_token=cancel_token,
            )
            report = task.run(commit_id)
            self._save_user_map()
        return report

    def fetch(
        self,
        version_control: RemoteVersionControlService,
        options: FetchOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> FetchReport:
        """Run a ``FetchTask`` under the repository lock."""
        with self.lock():
            self.changeset_map.reload()
            task = FetchTask(
                self.config,
                self.changeset_map,
                self.store,
                version_control,
                identity=self.identity,
                options=options,
                cancel_token=cancel_token,
            )
            return task.run()

    def shelve(
        self,
        workspace: RemoteWorkspaceService,
        name: str,
        commit_id: str | None = None,
        options: shelving.ShelveOptions | None = None,
    ) -> ShelveReport:
        """Run a ``ShelveTask`` under the repository lock."""
        with self.lock():
            self.changeset_map.reload()
            task = shelving.ShelveTask(
                self.config, self.changeset_map, self.store, workspace, options
            )
            return task.run(name, commit_id)

    def unshelve(
        self,
        version_control: RemoteVersionControlService,
        name: str,
        owner: str | None = None,
        max_parallel_downloads: int = 4,
    ) -> UnshelveResult:
        """Run an ``UnshelveTask`` under the repository lock."""
        with self.lock():
            self.changeset_map.reload()
            task = shelving.UnshelveTask(
                self.config,
                self.changeset_map,
                self.store,
                version_control,
                identity=self.identity,
                max_parallel_downloads=max_parallel_downloads,
            )
            return task.run(name, owner)

    @staticmethod
    def shelvesets(
        version_control: RemoteVersionControlService,
        name: str | None = None,
        owner: str | None = None,
        sort: shelving.ShelvesetSort = shelving.ShelvesetSort.DATE,
    ) -> list[Shelveset]:
        return shelving.list_shelvesets(version_control, name, owner, sort)

    @staticmethod
    def delete_shelveset(
        version_control: RemoteVersionControlService,
        name: str,
        owner: str | None = None,
    ) -> Shelveset:
        return shelving.delete_shelveset(version_control, name, owner)

    def repair(
        self, version_control: RemoteVersionControlService
    ) -> list[ChangesetCommitMapEntry]:
        """Recover a mapping lost after a remote checkin succeeded."""
        with self.lock():
            self.changeset_map.reload()
            return self._repair(version_control)

    def _repair(
        self, version_control: RemoteVersionControlService
    ) -> list[ChangesetCommitMapEntry]:
        head = self.store.head()
        lookup = (
            self._tree_lookup(version_control, head) if head is not None else None
        )
        return self.changeset_map.repair(
            version_control, self.config.server_path, head, commit_lookup=lookup
        )

    def _tree_lookup(
        self, version_control: RemoteVersionControlService, commit_id: str
    ) -> Callable[[int], str | None]:
        """Match a changeset to *commit_id* when their file trees are equal.

        Paths are compared first; contents only when the paths agree,
        using the MD5 digest the server reports per item.
        """
        server_path = self.config.server_path
        local_files = self.store.read_snapshot(commit_id).files()
        digests: dict[str, bytes] = {}

        def local_digest(path: str) -> bytes:
            if path not in digests:
                data = self.store.read_blob(local_files[path] or "")
                digests[path] = hashlib.md5(data).digest()
            return digests[path]

        def lookup(changeset_id: int) -> str | None:
            remote_files = {
                to_relative(server_path, item.path): item.content_id
                for item in version_control.get_items(
                    server_path, version=changeset_id
                )
                if not item.is_directory
            }
            if remote_files.keys() != local_files.keys():
                return None
            for path, content_id in remote_files.items():
                if not _digest_matches(content_id, local_digest(path)):
                    return None
            logger.debug(
                "Changeset %d has the tree of commit %s",
                changeset_id,
                commit_id[:12],
            )
            return commit_id

        return lookup

    def _save_user_map(self) -> None:
        if self.identity.path is None or not self.identity.is_changed:
            return
        self.identity.save()
