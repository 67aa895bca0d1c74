"""Tests for ConfigurationStore and UpgradeManager.

Covers:
- configuration save/load and format detection
- V0 (git-tf.json) -> V2 migration keeps every mapping and setting
- V1 keyed map -> V2 ordered map
- idempotence, refusal, rollback and newer-format rejection
"""

import json
from unittest.mock import patch

import pytest
import yaml

from tf_bridge.bridge.configuration import ConfigurationStore
from tf_bridge.bridge.state import ChangesetCommitMap
from tf_bridge.bridge.upgrade import UpgradeManager
from tf_bridge.config_schema import Depth, RepositoryConfiguration
from tf_bridge.errors import (
    MigrationRefused,
    NotConfigured,
    OutOfOrderChangeset,
    UnsupportedFormat,
)

COLLECTION = "https://tfs.example.com/tfs/DefaultCollection"
SHA_1 = "1" * 40
SHA_2 = "2" * 40
SHA_3 = "3" * 40


@pytest.fixture
def config_store(tmp_path):
    git_dir = tmp_path / ".git"
    git_dir.mkdir()
    return ConfigurationStore(git_dir)


def _write_legacy(store, **general):
    store.legacy_path.write_text(
        json.dumps(
            {
                "server": {
                    "collection": COLLECTION,
                    "serverpath": "$/Project/Main",
                    "username": "CORP\\builder",
                },
                "general": {"deep": True, "tag": False, **general},
                "commits": {
                    "changeset-3": SHA_2,
                    "changeset-1": SHA_1,
                    "bogus": SHA_3,
                },
                "changesets": {
                    "hwm": 5,
                    f"commit-{SHA_1}": 1,
                    f"commit-{SHA_2}": 3,
                },
            }
        )
    )


def _write_v1(store, commits=None, hwm=3):
    store.metadata_dir.mkdir(parents=True, exist_ok=True)
    store.save(
        RepositoryConfiguration(
            server_uri=COLLECTION, server_path="$/Project/Main", format_version=1
        )
    )
    commits = commits if commits is not None else {"changeset-1": SHA_1, "changeset-3": SHA_2}
    store.map_path.write_text(
        json.dumps(
            {
                "version": 1,
                "commits": commits,
                "changesets": {"hwm": hwm},
            }
        )
    )


class TestConfigurationStore:
    def test_not_configured(self, config_store):
        assert not config_store.exists()
        assert config_store.detect_format_version() is None
        with pytest.raises(NotConfigured):
            config_store.load()

    def test_save_and_load(self, config_store):
        config = RepositoryConfiguration(
            server_uri=COLLECTION, server_path="$/P", depth=Depth.DEEP
        )
        config_store.save(config)
        assert config_store.load() == config
        assert config_store.detect_format_version() == 2
        # None fields are not written
        assert "password" not in yaml.safe_load(config_store.config_path.read_text())

    def test_missing_version_is_v1(self, config_store):
        config_store.metadata_dir.mkdir()
        config_store.config_path.write_text(
            yaml.safe_dump({"server_uri": COLLECTION, "server_path": "$/P"})
        )
        assert config_store.detect_format_version() == 1

    def test_non_mapping_rejected(self, config_store):
        config_store.metadata_dir.mkdir()
        config_store.config_path.write_text("- a\n- b\n")
        with pytest.raises(UnsupportedFormat):
            config_store.load()

    def test_invalid_values_rejected(self, config_store):
        config_store.metadata_dir.mkdir()
        config_store.config_path.write_text(
            yaml.safe_dump({"server_uri": COLLECTION, "server_path": "no-root"})
        )
        with pytest.raises(UnsupportedFormat, match="Invalid repository configuration"):
            config_store.load()

    def test_legacy_detected(self, config_store):
        _write_legacy(config_store)
        assert config_store.exists()
        assert config_store.detect_format_version() == 0


class TestUpgradeFromLegacy:
    def test_migrates_settings_and_mappings(self, config_store):
        _write_legacy(config_store, **{"keep-author": True, "user-map": "users.txt"})

        assert UpgradeManager(config_store).upgrade_if_necessary() == [0, 1]

        assert not config_store.legacy_path.exists()
        config = config_store.load()
        assert config.server_uri == COLLECTION
        assert config.server_path == "$/Project/Main"
        assert config.username == "CORP\\builder"
        assert config.deep
        assert config.tag is False
        assert config.keep_author is True
        assert config.user_map == "users.txt"
        assert config.format_version == 2

        changeset_map = ChangesetCommitMap(config_store.map_path, linear=False)
        assert [(e.changeset, e.commit_id) for e in changeset_map.entries()] == [
            (1, SHA_1),
            (3, SHA_2),
        ]
        assert changeset_map.high_water_mark == 5

    def test_idempotent(self, config_store):
        _write_legacy(config_store)
        manager = UpgradeManager(config_store)
        manager.upgrade_if_necessary()
        before = config_store.map_path.read_text()

        assert manager.upgrade_if_necessary() == []
        assert config_store.map_path.read_text() == before

    def test_refuses_to_overwrite_map(self, config_store):
        _write_legacy(config_store)
        config_store.metadata_dir.mkdir()
        config_store.map_path.write_text("{}")

        with pytest.raises(MigrationRefused):
            UpgradeManager(config_store).upgrade_if_necessary()

        assert config_store.legacy_path.exists()
        assert config_store.map_path.read_text() == "{}"

    def test_failure_rolls_back(self, config_store):
        _write_legacy(config_store)
        with patch.object(ConfigurationStore, "save", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                UpgradeManager(config_store).upgrade_if_necessary()

        assert config_store.legacy_path.exists()
        assert not config_store.map_path.exists()
        assert config_store.detect_format_version() == 0

    def test_leftover_legacy_file_removed(self, config_store):
        _write_v1(config_store)
        config_store.legacy_path.write_text("{}")

        UpgradeManager(config_store).upgrade_if_necessary()

        assert not config_store.legacy_path.exists()

    def test_leftover_legacy_file_removed_once_mapped(self, config_store):
        _write_v1(config_store)
        _write_legacy(config_store)

        UpgradeManager(config_store).upgrade_if_necessary()

        assert not config_store.legacy_path.exists()
        changeset_map = ChangesetCommitMap(config_store.map_path, linear=False)
        assert changeset_map.get_commit(3) == SHA_2

    def test_leftover_legacy_file_kept_when_map_missing(self, config_store):
        _write_v1(config_store)
        config_store.map_path.unlink()
        _write_legacy(config_store)
        legacy_before = config_store.legacy_path.read_text()

        with pytest.raises(MigrationRefused) as exc_info:
            UpgradeManager(config_store).upgrade_if_necessary()

        assert exc_info.value.context["missing"] == 2
        assert config_store.legacy_path.read_text() == legacy_before
        assert not config_store.map_path.exists()
        assert config_store.detect_format_version() == 1

    def test_leftover_legacy_file_kept_when_map_incomplete(self, config_store):
        _write_v1(config_store, commits={"changeset-1": SHA_1})
        _write_legacy(config_store)

        with pytest.raises(MigrationRefused):
            UpgradeManager(config_store).upgrade_if_necessary()

        assert config_store.legacy_path.exists()


class TestUpgradeFromV1:
    def test_keyed_map_becomes_entry_list(self, config_store):
        _write_v1(config_store, hwm=7)

        assert UpgradeManager(config_store).upgrade_if_necessary() == [1]

        data = json.loads(config_store.map_path.read_text())
        assert data == {
            "version": 2,
            "high_water_mark": 7,
            "entries": [
                {"changeset": 1, "commit": SHA_1},
                {"changeset": 3, "commit": SHA_2},
            ],
        }
        assert config_store.load().format_version == 2

    def test_without_map(self, config_store):
        _write_v1(config_store)
        config_store.map_path.unlink()

        UpgradeManager(config_store).upgrade_if_necessary()

        assert config_store.detect_format_version() == 2
        assert not config_store.map_path.exists()

    def test_interrupted_run_finishes(self, config_store):
        """A v2 map with a v1 config only needs the version bump."""
        _write_v1(config_store)
        v2_map = {"version": 2, "high_water_mark": 3, "entries": []}
        config_store.map_path.write_text(json.dumps(v2_map))

        UpgradeManager(config_store).upgrade_if_necessary()

        assert json.loads(config_store.map_path.read_text()) == v2_map
        assert config_store.detect_format_version() == 2

    def test_unknown_map_version(self, config_store):
        _write_v1(config_store)
        config_store.map_path.write_text(json.dumps({"version": 9}))
        with pytest.raises(UnsupportedFormat):
            UpgradeManager(config_store).upgrade_if_necessary()
        assert config_store.detect_format_version() == 1

    def test_duplicate_changeset_rejected(self, config_store):
        _write_v1(
            config_store,
            commits={"changeset-1": SHA_1, "changeset-01": SHA_2},
        )
        with pytest.raises(OutOfOrderChangeset):
            UpgradeManager(config_store).upgrade_if_necessary()


class TestUpgradePreconditions:
    def test_not_configured(self, config_store):
        with pytest.raises(NotConfigured):
            UpgradeManager(config_store).upgrade_if_necessary()

    def test_newer_format_rejected(self, config_store):
        config_store.save(
            RepositoryConfiguration(
                server_uri=COLLECTION, server_path="$/P", format_version=3
            )
        )
        with pytest.raises(UnsupportedFormat, match="newer version"):
            UpgradeManager(config_store).upgrade_if_necessary()

    def test_current_is_noop(self, config_store):
        config_store.save(RepositoryConfiguration(server_uri=COLLECTION, server_path="$/P"))
        assert UpgradeManager(config_store).upgrade_if_necessary() == []
