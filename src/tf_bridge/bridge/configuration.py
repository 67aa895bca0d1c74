"""Repository configuration store.

Layout of the private metadata area under the repository's git dir::

    <git-dir>/tf/config.yml         RepositoryConfiguration (YAML)
    <git-dir>/tf/changesets.json    changeset <-> commit map
    <git-dir>/tf/.lock              held while a task runs
    <git-dir>/git-tf.json           legacy combined store (format 0)

The configuration is written with ``yaml.safe_dump`` through an atomic
temp-file replace, the same way the map is written.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from tf_bridge.bridge.state import MAP_FILENAME
from tf_bridge.config_schema import RepositoryConfiguration
from tf_bridge.errors import NotConfigured, UnsupportedFormat
from tf_bridge.file_handler import write_atomic

logger = logging.getLogger(__name__)

METADATA_DIRNAME = "tf"
CONFIG_FILENAME = "config.yml"
LOCK_FILENAME = ".lock"
LEGACY_FILENAME = "git-tf.json"
LEGACY_FORMAT_VERSION = 0


class ConfigurationStore:
    """Load and save the repository configuration.

    Args:
        git_dir: The repository's git directory (``.git``).
    """

    def __init__(self, git_dir: Path) -> None:
        self.git_dir = git_dir
        self.metadata_dir = git_dir / METADATA_DIRNAME

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def config_path(self) -> Path:
        return self.metadata_dir / CONFIG_FILENAME

    @property
    def map_path(self) -> Path:
        return self.metadata_dir / MAP_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.metadata_dir / LOCK_FILENAME

    @property
    def legacy_path(self) -> Path:
        return self.git_dir / LEGACY_FILENAME

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.config_path.exists() or self.legacy_path.exists()

    def detect_format_version(self) -> int | None:
        """On-disk format version, or ``None`` when unconfigured.

        The current-layout config wins over a leftover legacy file.
        """
        if self.config_path.exists():
            return int(self._read_raw().get("format_version", 1))
        if self.legacy_path.exists():
            return LEGACY_FORMAT_VERSION
        return None

    def _read_raw(self) -> dict[str, Any]:
        with open(self.config_path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict):
            raise UnsupportedFormat(
                "Repository configuration is not a mapping",
                path=str(self.config_path),
            )
        return data

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> RepositoryConfiguration:
        """Load the configuration.

        Raises:
            NotConfigured: No configuration exists for this repository.
            UnsupportedFormat: The file cannot be parsed as a configuration.
        """
        if not self.config_path.exists():
            raise NotConfigured(
                "The repository is not configured for TFS",
                path=str(self.git_dir),
            )
        try:
            return RepositoryConfiguration(**self._read_raw())
        except ValidationError as exc:
            raise UnsupportedFormat(
                f"Invalid repository configuration: {exc.errors()[0]['msg']}",
                path=str(self.config_path),
            ) from exc

    def save(self, config: RepositoryConfiguration) -> None:
        data = config.model_dump(mode="json", exclude_none=True)
        write_atomic(
            self.config_path,
            yaml.safe_dump(data, default_flow_style=False, sort_keys=True),
        )
        logger.debug("Saved repository configuration to %s", self.config_path)

    def remove(self) -> None:
        """Delete the configuration file; the changeset map is left alone."""
        self.config_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Legacy store
    # ------------------------------------------------------------------

    def read_legacy(self) -> dict[str, Any]:
        with open(self.legacy_path, encoding="utf-8") as fh:
            return json.load(fh)
