"""Shared pytest fixtures for tf-bridge tests."""

from pathlib import Path

import pytest
from dotenv import load_dotenv

from tf_bridge.bridge.models import LocalAuthor
from tf_bridge.bridge.state import ChangesetCommitMap
from tf_bridge.config import Config
from tf_bridge.config_schema import Depth, RepositoryConfiguration
from tf_bridge.core.memory import (
    InMemoryIdentityService,
    InMemoryObjectStore,
    InMemoryVersionControlService,
    InMemoryWorkspace,
)

load_dotenv()

SERVER_PATH = "$/Project/Main"


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live TFS instance",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live TFS instance"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


@pytest.fixture
def mock_config():
    """Connection settings for a fake collection."""
    return Config(
        server_url="https://tfs.example.com/tfs/DefaultCollection",
        username="CORP\\builder",
        password="secret",
        insecure=False,
        max_retries=2,
    )


@pytest.fixture
def repo_config():
    """Repository configuration bridging SERVER_PATH (shallow, tagging)."""
    return RepositoryConfiguration(
        server_uri="https://tfs.example.com/tfs/DefaultCollection",
        server_path=SERVER_PATH,
    )


@pytest.fixture
def deep_config(repo_config):
    return repo_config.model_copy(update={"depth": Depth.DEEP})


@pytest.fixture
def changeset_map(tmp_path: Path):
    return ChangesetCommitMap(tmp_path / "tf" / "changesets.json")


@pytest.fixture
def remote():
    return InMemoryVersionControlService()


@pytest.fixture
def workspace(remote):
    return InMemoryWorkspace(remote)


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def identities():
    return InMemoryIdentityService()


@pytest.fixture
def author():
    return LocalAuthor(name="Jane Doe", email="jane@example.com")
