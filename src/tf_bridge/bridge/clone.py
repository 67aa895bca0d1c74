"""Create a bridged repository from a server folder.

``CloneTask`` checks that the server path names a folder, writes the
repository configuration, fetches the newest ``depth`` changesets and
checks the last one out on a local branch. A depth of one clones
shallow; anything larger configures the repository as deep.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from tf_bridge.bridge.configuration import ConfigurationStore
from tf_bridge.bridge.fetch import FetchOptions, FetchTask
from tf_bridge.bridge.identity import IdentityResolver
from tf_bridge.bridge.machine import CancellationToken
from tf_bridge.bridge.models import FetchReport
from tf_bridge.bridge.state import ChangesetCommitMap
from tf_bridge.config_schema import (
    CURRENT_FORMAT_VERSION,
    Depth,
    RepositoryConfiguration,
)
from tf_bridge.core.interfaces import (
    LocalObjectStore,
    RemoteVersionControlService,
)
from tf_bridge.errors import AlreadyConfigured, NotAFolder

logger = logging.getLogger(__name__)


class CloneOptions(BaseModel):
    """Per-run clone options.

    Attributes:
        depth: Number of changesets to fetch (1 is a shallow clone).
        target_changeset: Clone up to this changeset instead of the tip.
        tag: Tag fetched commits with their changeset number.
        branch: Local branch checked out at the fetched head.
        max_parallel_downloads: Concurrent downloads per changeset.
    """

    depth: int = Field(default=1, ge=1)
    target_changeset: int | None = Field(default=None, gt=0)
    tag: bool = True
    branch: str = "master"
    max_parallel_downloads: int = Field(default=4, ge=1, le=64)

    model_config = {"frozen": True}


class CloneTask:
    """Configure an empty repository and fetch its first history.

    Args:
        git_dir: Git directory of the new repository.
        store: Local object store of the new repository.
        version_control: Remote history and item access.
        server_uri: Team project collection URL.
        server_path: Server folder to clone.
        identity: Optional resolver for owner -> author mapping.
        options: Per-run options.
        cancel_token: Cooperative cancellation, honoured between changesets.
    """

    def __init__(
        self,
        git_dir: Path,
        store: LocalObjectStore,
        version_control: RemoteVersionControlService,
        server_uri: str,
        server_path: str,
        identity: IdentityResolver | None = None,
        options: CloneOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.git_dir = git_dir
        self.store = store
        self.version_control = version_control
        self.server_uri = server_uri
        self.server_path = server_path
        self.identity = identity
        self.options = options or CloneOptions()
        self.cancel_token = cancel_token

    def run(self) -> FetchReport:
        """Clone the server folder.

        Raises:
            AlreadyConfigured: The repository is already bridged.
            NotAFolder: The server path is missing or is a file.
        """
        config_store = ConfigurationStore(self.git_dir)
        if config_store.exists():
            raise AlreadyConfigured(
                "The repository is already configured for TFS",
                path=str(self.git_dir),
            )
        self._check_folder()

        config = RepositoryConfiguration(
            server_uri=self.server_uri,
            server_path=self.server_path,
            format_version=CURRENT_FORMAT_VERSION,
            depth=Depth.DEEP if self.options.depth > 1 else Depth.SHALLOW,
            tag=self.options.tag,
        )
        config_store.save(config)
        logger.info(
            "Cloning %s (%s, depth %d)",
            config.server_path,
            config.depth.value,
            self.options.depth,
        )

        changeset_map = ChangesetCommitMap(
            config_store.map_path, linear=not config.deep
        )
        report = FetchTask(
            config,
            changeset_map,
            self.store,
            self.version_control,
            identity=self.identity,
            options=FetchOptions(
                deep=config.deep,
                target_changeset=self.options.target_changeset,
                limit=self.options.depth,
                max_parallel_downloads=self.options.max_parallel_downloads,
            ),
            cancel_token=self.cancel_token,
        ).run()

        if report.results and report.fetch_head is not None:
            self.store.checkout(self.options.branch, report.fetch_head)
        else:
            logger.warning(
                "Nothing was fetched from %s; no branch checked out",
                config.server_path,
            )
        return report

    def _check_folder(self) -> None:
        items = self.version_control.get_items(
            self.server_path,
            version=self.options.target_changeset,
            recursive=False,
        )
        wanted = self.server_path.rstrip("/").lower()
        root = next(
            (i for i in items if i.path.rstrip("/").lower() == wanted), None
        )
        if root is None:
            raise NotAFolder(
                "The server path does not exist", path=self.server_path
            )
        if not root.is_directory:
            raise NotAFolder("The server path is a file", path=self.server_path)
