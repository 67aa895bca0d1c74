"""Session setup: wire configuration, the TFS client and the repository.

``bridge_session()`` is what an embedding tool calls before running a
task. It resolves connection settings from every source, checks that the
collection is reachable, and yields a ``BridgeSession`` whose task
options come from the ``bridge`` and ``tfs`` config sections.
``clone_repository()`` and ``unconfigure_repository()`` set a repository
up and take it down.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from dulwich.errors import NotGitRepository

from tf_bridge.bridge.checkin import CheckinOptions
from tf_bridge.bridge.clone import CloneOptions
from tf_bridge.bridge.configuration import ConfigurationStore
from tf_bridge.bridge.fetch import FetchOptions
from tf_bridge.bridge.machine import CancellationToken
from tf_bridge.bridge.models import (
    CheckinReport,
    FetchReport,
    Shelveset,
    ShelveReport,
    UnshelveResult,
)
from tf_bridge.bridge.repository import BridgeRepository
from tf_bridge.bridge.shelve import ShelveOptions, ShelvesetSort
from tf_bridge.bridge.upgrade import UpgradeManager
from tf_bridge.config import Config, load_config
from tf_bridge.config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from tf_bridge.config_schema import (
    RepositoryConfiguration,
    UnifiedConfig,
    build_config,
)
from tf_bridge.core.client import TfsClient, TfsWorkspace
from tf_bridge.core.git_store import GitObjectStore
from tf_bridge.errors import NotConfigured

logger = logging.getLogger(__name__)


class BridgeSession:
    """An open repository plus a connected client.

    Each ``check_in`` gets a fresh ``TfsWorkspace`` so pending changes
    never leak between runs.
    """

    def __init__(
        self,
        repository: BridgeRepository,
        client: TfsClient,
        settings: UnifiedConfig,
    ) -> None:
        self.repository = repository
        self.client = client
        self.settings = settings

    def check_in(
        self,
        commit_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        **overrides: Any,
    ) -> CheckinReport:
        options = CheckinOptions.from_config(self.settings.bridge, **overrides)
        return self.repository.check_in(
            self.client,
            TfsWorkspace(self.client),
            commit_id=commit_id,
            options=options,
            cancel_token=cancel_token,
        )

    def fetch(
        self,
        cancel_token: CancellationToken | None = None,
        **overrides: Any,
    ) -> FetchReport:
        options = FetchOptions.from_config(self.settings.tfs, **overrides)
        return self.repository.fetch(
            self.client, options=options, cancel_token=cancel_token
        )

    def shelve(
        self, name: str, commit_id: str | None = None, **overrides: Any
    ) -> ShelveReport:
        options = ShelveOptions.from_config(self.settings.bridge, **overrides)
        return self.repository.shelve(
            TfsWorkspace(self.client), name, commit_id=commit_id, options=options
        )

    def unshelve(self, name: str, owner: str | None = None) -> UnshelveResult:
        return self.repository.unshelve(
            self.client,
            name,
            owner=owner,
            max_parallel_downloads=self.settings.tfs.max_parallel_downloads,
        )

    def shelvesets(
        self,
        name: str | None = None,
        owner: str | None = None,
        sort: ShelvesetSort = ShelvesetSort.DATE,
    ) -> list[Shelveset]:
        return self.repository.shelvesets(self.client, name, owner, sort)

    def delete_shelveset(self, name: str, owner: str | None = None) -> Shelveset:
        return self.repository.delete_shelveset(self.client, name, owner)


def connection_config(
    settings: UnifiedConfig,
    repository: RepositoryConfiguration,
    overrides: dict[str, Any] | None = None,
) -> Config:
    """Resolve the connection settings for *repository*.

    Precedence: CLI overrides > environment > repository configuration >
    YAML ``tfs`` section > defaults.
    """
    fallbacks = {
        k: v for k, v in settings.tfs.model_dump().items() if v is not None
    }
    fallbacks["url"] = repository.server_uri
    if repository.username:
        fallbacks["username"] = repository.username
    if repository.password:
        fallbacks["password"] = repository.password

    overrides = overrides or {}
    return load_config(
        url=overrides.get("url"),
        username=overrides.get("username"),
        password=overrides.get("password"),
        insecure=overrides.get("insecure", False),
        debug=overrides.get("debug", False),
        yaml_fallbacks=fallbacks,
    )


@contextmanager
def bridge_session(
    work_tree: Path,
    config_overrides: dict[str, Any] | None = None,
) -> Iterator[BridgeSession]:
    """Open *work_tree* for synchronization.

    Args:
        work_tree: Git work tree (or git directory) of a configured
            repository.
        config_overrides: Optional dict with values from the caller's
            command line (url, username, password, insecure, debug).

    Yields:
        A ``BridgeSession`` ready to run tasks.

    Raises:
        NotConfigured: The repository is not configured or the connection
            settings are invalid.
    """
    settings = _load_settings()
    store = GitObjectStore.open(work_tree)
    try:
        config_store = ConfigurationStore(store.git_dir)
        UpgradeManager(config_store).upgrade_if_necessary()
        repository_config = config_store.load()
        client = _connect(
            settings,
            repository_config,
            config_overrides,
            str(config_store.config_path),
        )

        repository = BridgeRepository.open(store.git_dir, store, client)
        logger.info(
            "Session ready for %s (%s)",
            repository.config.server_path,
            repository.config.depth.value,
        )
        yield BridgeSession(repository, client, settings)
    finally:
        store.close()


def clone_repository(
    work_tree: Path,
    server_uri: str,
    server_path: str,
    bare: bool = False,
    config_overrides: dict[str, Any] | None = None,
    cancel_token: CancellationToken | None = None,
    **options: Any,
) -> FetchReport:
    """Create a repository at *work_tree* and fetch *server_path* into it.

    Args:
        work_tree: Repository to clone into, created if it is not one yet.
        server_uri: Team project collection URL.
        server_path: Server folder to clone.
        bare: Create a repository without a work tree.
        config_overrides: Connection values from the caller's command line.
        cancel_token: Cooperative cancellation for the initial fetch.
        **options: ``CloneOptions`` fields (depth, target_changeset, ...).

    Raises:
        NotConfigured: The connection settings are invalid.
        AlreadyConfigured: *work_tree* is already bridged.
        NotAFolder: The server path is missing or is a file.
    """
    settings = _load_settings()
    try:
        target = RepositoryConfiguration(
            server_uri=server_uri, server_path=server_path
        )
    except ValueError as e:
        raise NotConfigured(f"Configuration error: {e}", path=server_path) from e
    client = _connect(settings, target, config_overrides, str(work_tree))
    clone_options = CloneOptions(
        **{"max_parallel_downloads": settings.tfs.max_parallel_downloads, **options}
    )

    try:
        store = GitObjectStore.open(work_tree)
    except NotGitRepository:
        store = GitObjectStore.init(work_tree, bare=bare)
    try:
        return BridgeRepository.clone(
            store.git_dir,
            store,
            client,
            server_uri,
            target.server_path,
            options=clone_options,
            identity_service=client,
            cancel_token=cancel_token,
        )
    finally:
        store.close()


def unconfigure_repository(work_tree: Path) -> None:
    """Remove the bridge configuration of *work_tree*, keeping its history map."""
    store = GitObjectStore.open(work_tree)
    try:
        BridgeRepository.unconfigure(store.git_dir)
    finally:
        store.close()


def _load_settings() -> UnifiedConfig:
    # .env first so ${VAR} interpolation in YAML can see its values
    load_dotenv()

    config_files = discover_config_files()
    settings = build_config(load_hierarchical_config())
    if config_files:
        logger.info("Configuration loaded from: %s", config_files[0])
    return settings


def _connect(
    settings: UnifiedConfig,
    repository: RepositoryConfiguration,
    overrides: dict[str, Any] | None,
    location: str,
) -> TfsClient:
    """Build a client for *repository* and check the collection answers."""
    try:
        config = connection_config(settings, repository, overrides)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise NotConfigured(f"Configuration error: {e}", path=location) from e

    client = TfsClient(config)
    logger.info("Validating connection to %s", config.server_url)
    try:
        client.validate_connection()
    except Exception as e:
        logger.error("Failed to connect to %s: %s", config.server_url, e)
        raise
    return client
