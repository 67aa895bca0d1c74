"""Unified configuration schema for tf_bridge.

Defines Pydantic models for:

* the tool-level config structure (``UnifiedConfig``) with dedicated
  sections for the TFS connection, bridge task defaults and logging, plus
  an adapter to the ``Config`` connection dataclass;
* the per-repository bridge configuration (``RepositoryConfiguration``)
  persisted under the repository's private metadata area.

Usage:
    from tf_bridge.config_schema import (
        UnifiedConfig, build_config, to_legacy_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    legacy = to_legacy_config(unified, cli_overrides={"url": "https://..."})
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

from .validators import validate_server_path

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

CURRENT_FORMAT_VERSION = 2


class Depth(str, Enum):
    """History depth for fetch and checkin.

    ``shallow`` squashes a range into one commit / changeset; ``deep``
    keeps a 1:1 correspondence whenever possible.
    """

    SHALLOW = "shallow"
    DEEP = "deep"


class RenameMode(str, Enum):
    """Which renames the pending-change computation reports."""

    NONE = "none"
    FILES = "files"
    ALL = "all"


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class TfsConfig(BaseModel):
    """TFS server connection settings.

    All fields are optional to support zero-config: env vars, CLI args and
    the repository configuration can supply them at runtime instead.
    """

    url: str | None = Field(
        default=None, description="Team project collection URL"
    )
    username: str | None = Field(default=None, description="TFS username")
    password: str | None = Field(default=None, description="TFS password")
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    max_parallel_downloads: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Concurrent item downloads per changeset (1-64)",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for transient network errors (0-10)",
    )

    model_config = {"frozen": True}


class BridgeConfig(BaseModel):
    """Defaults applied to checkin and fetch tasks."""

    max_conflict_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Restarts of validation after a checkin conflict",
    )
    lock: bool = Field(
        default=True, description="Lock the server path during deep checkin"
    )
    rename_mode: RenameMode = Field(default=RenameMode.FILES)
    max_comment_rollup: int = Field(
        default=20,
        ge=1,
        description="Commits summarised in a shallow checkin comment",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Per-repository configuration
# ---------------------------------------------------------------------------


class RepositoryConfiguration(BaseModel):
    """Bridge configuration stored in the repository metadata area.

    Attributes:
        server_uri: Team project collection URL.
        server_path: Server folder bridged to the repository (``$/...``).
        username: Saved username, or ``None`` to use default credentials.
        password: Saved password (optional).
        depth: Default history depth.
        format_version: On-disk format version of the metadata area.
        tag: Tag commits with their changeset number.
        include_metadata: Include commit metadata in checkin comments.
        keep_author: Check in under the commit author's TFS identity.
        user_map: Path of the identity mapping file.
        build_definition: Gated build definition to queue.
        temp_directory: Override for the staging directory.
    """

    server_uri: str
    server_path: str
    username: str | None = None
    password: str | None = None
    depth: Depth = Depth.SHALLOW
    format_version: int = CURRENT_FORMAT_VERSION
    tag: bool = True
    include_metadata: bool = False
    keep_author: bool = False
    user_map: str | None = None
    build_definition: str | None = None
    temp_directory: str | None = None

    model_config = {"frozen": True}

    @field_validator("server_path")
    @classmethod
    def _check_server_path(cls, value: str) -> str:
        ok, reason = validate_server_path(value)
        if not ok:
            raise ValueError(reason)
        return value.rstrip("/") if value != "$/" else value

    @property
    def deep(self) -> bool:
        """``True`` when the configured depth is deep."""
        return self.depth == Depth.DEEP


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    tfs: TfsConfig = Field(default_factory=TfsConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully: anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_legacy_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
    repository: RepositoryConfiguration | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the ``Config`` connection dataclass.

    The precedence applied here is:
        CLI override > repository configuration > unified config value > default

    CLI overrides dict keys: url, username, password, insecure, debug.

    Args:
        unified: The unified config produced by ``build_config()``.
        cli_overrides: Optional dict of CLI argument values.
        repository: Optional repository configuration supplying the
            collection URL and saved credentials.

    Returns:
        ``Config`` dataclass instance (NOT validated; caller should run
        ``validate_config()`` separately if needed).
    """
    # config.py is imported lazily to keep this module importable on its own
    from .config import Config

    overrides = cli_overrides or {}
    repo_url = repository.server_uri if repository else None
    repo_user = repository.username if repository else None
    repo_password = repository.password if repository else None

    return Config(
        server_url=overrides.get("url") or repo_url or unified.tfs.url or "",
        username=overrides.get("username")
        or repo_user
        or unified.tfs.username
        or "",
        password=overrides.get("password")
        or repo_password
        or unified.tfs.password
        or "",
        insecure=overrides.get("insecure", False) or unified.tfs.insecure,
        debug=overrides.get("debug", False) or unified.tfs.debug,
        max_parallel_downloads=unified.tfs.max_parallel_downloads,
        max_retries=unified.tfs.max_retries,
    )
