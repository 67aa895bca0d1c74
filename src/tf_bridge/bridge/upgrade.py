"""Forward migration of the repository metadata format.

Format versions:

* **0** -- legacy single ``<git-dir>/git-tf.json`` holding the server
  settings and both map sections (``changeset-N`` / ``commit-<sha>`` keys
  plus ``hwm``).
* **1** -- ``tf/config.yml`` plus a keyed ``tf/changesets.json``
  (``{"version": 1, "commits": {...}, "changesets": {...}}``).
* **2** -- ``tf/changesets.json`` as an ordered entry list with an
  explicit high-water mark (current).

Each step is all-or-nothing: a failure leaves the repository at the
version it started from, and a re-run after an interrupted step finishes
the job.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from tf_bridge.bridge.configuration import LEGACY_FORMAT_VERSION, ConfigurationStore
from tf_bridge.bridge.models import ChangesetCommitMapEntry
from tf_bridge.bridge.state import MAP_FORMAT_VERSION
from tf_bridge.config_schema import (
    CURRENT_FORMAT_VERSION,
    Depth,
    RepositoryConfiguration,
)
from tf_bridge.errors import (
    MigrationRefused,
    NotConfigured,
    OutOfOrderChangeset,
    UnsupportedFormat,
)
from tf_bridge.file_handler import write_atomic

logger = logging.getLogger(__name__)

_CHANGESET_KEY = re.compile(r"^changeset-(\d+)$")
_COMMIT_KEY = re.compile(r"^commit-([0-9a-fA-F]{40})$")


def _legacy_entries(
    commits: dict[str, Any], changesets: dict[str, Any]
) -> tuple[list[ChangesetCommitMapEntry], int]:
    """Parse keyed map sections into ordered entries and a high-water mark."""
    entries: list[ChangesetCommitMapEntry] = []
    for key, commit_id in commits.items():
        match = _CHANGESET_KEY.match(key)
        if match is None:
            logger.warning("Ignoring unexpected map key %r", key)
            continue
        entries.append(
            ChangesetCommitMapEntry(
                changeset=int(match.group(1)), commit_id=commit_id
            )
        )
    entries.sort(key=lambda e: e.changeset)

    for key, changeset in changesets.items():
        match = _COMMIT_KEY.match(key)
        if match is None:
            continue
        commit_id = match.group(1).lower()
        if not any(
            e.changeset == int(changeset) and e.commit_id == commit_id
            for e in entries
        ):
            logger.warning(
                "Reverse entry %s -> %s has no forward entry",
                commit_id[:12],
                changeset,
            )

    hwm = int(changesets.get("hwm", 0) or 0)
    return entries, max([hwm] + [e.changeset for e in entries])


def _keyed_sections(
    entries: list[ChangesetCommitMapEntry], hwm: int
) -> dict[str, Any]:
    return {
        "version": 1,
        "commits": {f"changeset-{e.changeset}": e.commit_id for e in entries},
        "changesets": {
            "hwm": hwm,
            **{f"commit-{e.commit_id}": e.changeset for e in entries},
        },
    }


class UpgradeManager:
    """Bring a repository's metadata to ``CURRENT_FORMAT_VERSION``.

    Args:
        store: Configuration store of the repository being opened.
    """

    def __init__(self, store: ConfigurationStore) -> None:
        self.store = store
        self._steps: dict[int, Callable[[], None]] = {
            LEGACY_FORMAT_VERSION: self._upgrade_v0_to_v1,
            1: self._upgrade_v1_to_v2,
        }

    def upgrade_if_necessary(self) -> list[int]:
        """Apply every pending migration in order.

        Returns:
            The versions that were migrated *from* (empty when already
            current).

        Raises:
            NotConfigured: The repository has no configuration.
            UnsupportedFormat: The format is newer than this version
                understands.
            MigrationRefused: A migration would overwrite existing data.
        """
        version = self.store.detect_format_version()
        if version is None:
            raise NotConfigured(
                "The repository is not configured for TFS",
                path=str(self.store.git_dir),
            )
        if version > CURRENT_FORMAT_VERSION:
            raise UnsupportedFormat(
                "Repository metadata was written by a newer version",
                version=version,
                supported=CURRENT_FORMAT_VERSION,
            )

        if version >= 1 and self.store.legacy_path.exists():
            self._remove_superseded_legacy()

        applied: list[int] = []
        while version < CURRENT_FORMAT_VERSION:
            logger.info(
                "Upgrading repository metadata from format %d to %d",
                version,
                version + 1,
            )
            self._steps[version]()
            applied.append(version)
            version = self.store.detect_format_version() or 0
        return applied

    def _remove_superseded_legacy(self) -> None:
        """Drop a legacy store left next to a newer configuration.

        Only done when the changeset map already holds every legacy
        mapping, as after a V0 -> V1 run that stopped before the unlink.

        Raises:
            MigrationRefused: The legacy store holds mappings the map lacks
                (or cannot be read); both files are left untouched.
        """
        store = self.store
        try:
            legacy = store.read_legacy()
        except ValueError as exc:
            raise MigrationRefused(
                "Leftover legacy store cannot be read",
                source=str(store.legacy_path),
            ) from exc

        legacy_entries, _ = _legacy_entries(
            legacy.get("commits", {}), legacy.get("changesets", {})
        )
        wanted = {(e.changeset, e.commit_id) for e in legacy_entries}
        missing = wanted - self._mapped_pairs()
        if missing:
            raise MigrationRefused(
                "Leftover legacy store holds mappings missing from the "
                "changeset map",
                source=str(store.legacy_path),
                path=str(store.map_path),
                missing=len(missing),
            )

        logger.warning("Removing superseded legacy store %s", store.legacy_path)
        store.legacy_path.unlink()

    def _mapped_pairs(self) -> set[tuple[int, str]]:
        if not self.store.map_path.exists():
            return set()
        with open(self.store.map_path, encoding="utf-8") as fh:
            data = json.load(fh)
        if data.get("version", 1) == 1:
            entries, _ = _legacy_entries(
                data.get("commits", {}), data.get("changesets", {})
            )
            return {(e.changeset, e.commit_id) for e in entries}
        return {
            (int(item["changeset"]), str(item["commit"]).lower())
            for item in data.get("entries", [])
        }

    # ------------------------------------------------------------------
    # V0 -> V1
    # ------------------------------------------------------------------

    def _upgrade_v0_to_v1(self) -> None:
        store = self.store
        if store.map_path.exists():
            raise MigrationRefused(
                "Destination changeset map already exists",
                path=str(store.map_path),
                source=str(store.legacy_path),
            )

        legacy = store.read_legacy()
        server = legacy.get("server", {})
        general = legacy.get("general", {})
        entries, hwm = _legacy_entries(
            legacy.get("commits", {}), legacy.get("changesets", {})
        )

        config = RepositoryConfiguration(
            server_uri=server["collection"],
            server_path=server["serverpath"],
            username=server.get("username"),
            password=server.get("password"),
            depth=Depth.DEEP if general.get("deep") else Depth.SHALLOW,
            tag=bool(general.get("tag", True)),
            include_metadata=bool(general.get("include-metadata", False)),
            keep_author=bool(general.get("keep-author", False)),
            user_map=general.get("user-map"),
            format_version=1,
        )

        store.metadata_dir.mkdir(parents=True, exist_ok=True)
        try:
            write_atomic(
                store.map_path,
                json.dumps(_keyed_sections(entries, hwm), indent=2) + "\n",
            )
            store.save(config)
        except BaseException:
            logger.error(
                "Upgrade from format 0 failed, rolling back new files"
            )
            store.map_path.unlink(missing_ok=True)
            store.remove()
            raise

        store.legacy_path.unlink()
        logger.info(
            "Migrated %d mappings out of %s", len(entries), store.legacy_path
        )

    # ------------------------------------------------------------------
    # V1 -> V2
    # ------------------------------------------------------------------

    def _upgrade_v1_to_v2(self) -> None:
        store = self.store
        if store.map_path.exists():
            with open(store.map_path, encoding="utf-8") as fh:
                data = json.load(fh)
            map_version = data.get("version", 1)
            if map_version == 1:
                entries, hwm = _legacy_entries(
                    data.get("commits", {}), data.get("changesets", {})
                )
                self._check_ascending(entries)
                payload = {
                    "version": MAP_FORMAT_VERSION,
                    "high_water_mark": hwm,
                    "entries": [
                        {"changeset": e.changeset, "commit": e.commit_id}
                        for e in entries
                    ],
                }
                write_atomic(
                    store.map_path, json.dumps(payload, indent=2) + "\n"
                )
            elif map_version != MAP_FORMAT_VERSION:
                raise UnsupportedFormat(
                    "Unexpected changeset map format",
                    path=str(store.map_path),
                    version=map_version,
                )

        # Map first, then the version bump: a rerun finds a v2 map and
        # only bumps the configuration.
        config = store.load()
        store.save(config.model_copy(update={"format_version": 2}))

    @staticmethod
    def _check_ascending(entries: list[ChangesetCommitMapEntry]) -> None:
        seen: set[int] = set()
        for entry in entries:
            if entry.changeset in seen:
                raise OutOfOrderChangeset(
                    "Duplicate changeset in map", changeset=entry.changeset
                )
            seen.add(entry.changeset)
