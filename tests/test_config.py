"""Tests for tf_bridge.config — connection settings and validation.

The YAML file layer is covered in test_config_loader.py and the pydantic
models in test_config_schema.py; this module covers validate_config()
and load_config().
"""

import logging

import pytest

from tf_bridge.config import Config, load_config, validate_config

COLLECTION = "https://tfs.example.com/tfs/DefaultCollection"

ENV_VARS = (
    "TFS_URL",
    "TFS_USERNAME",
    "TFS_PASSWORD",
    "TFS_INSECURE",
    "TFS_DEBUG",
    "TFS_MAX_PARALLEL_DOWNLOADS",
    "TFS_MAX_RETRIES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# -------------------------------------------------------------------------
# validate_config()
# -------------------------------------------------------------------------


class TestValidateConfig:
    def test_valid_config(self):
        validate_config(Config(server_url=COLLECTION, username="CORP\\u", password="p"))

    def test_default_credentials_allowed(self):
        validate_config(Config(server_url="http://localhost:8080/tfs/C"))

    @pytest.mark.parametrize("url", ["tfs.example.com", "ftp://tfs.example.com"])
    def test_scheme_required(self, url):
        with pytest.raises(ValueError, match="must start with http:// or https://"):
            validate_config(Config(server_url=url))

    def test_hostname_required(self):
        with pytest.raises(ValueError, match="hostname"):
            validate_config(Config(server_url="https://"))

    def test_trailing_slash_and_whitespace_stripped(self):
        config = Config(server_url="  " + COLLECTION + "/  ")
        validate_config(config)
        assert config.server_url == COLLECTION

    def test_password_without_username(self):
        with pytest.raises(ValueError, match="without a username"):
            validate_config(Config(server_url=COLLECTION, username=" ", password="p"))

    def test_insecure_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="tf_bridge.config"):
            validate_config(Config(server_url=COLLECTION, insecure=True))
        assert "SSL verification disabled" in caplog.text


# -------------------------------------------------------------------------
# load_config()
# -------------------------------------------------------------------------


class TestLoadConfig:
    def test_missing_url(self):
        with pytest.raises(ValueError, match="TFS collection URL not found"):
            load_config()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TFS_URL", COLLECTION)
        monkeypatch.setenv("TFS_USERNAME", " CORP\\builder ")
        monkeypatch.setenv("TFS_PASSWORD", "secret")
        monkeypatch.setenv("TFS_INSECURE", "yes")

        config = load_config()

        assert config.server_url == COLLECTION
        assert config.username == "CORP\\builder"
        assert config.password == "secret"
        assert config.insecure is True
        assert config.debug is False
        assert config.max_parallel_downloads == 4
        assert config.max_retries == 3

    def test_cli_beats_env(self, monkeypatch):
        monkeypatch.setenv("TFS_URL", "https://env.example.com/tfs/C")
        config = load_config(url=COLLECTION)
        assert config.server_url == COLLECTION

    def test_env_beats_yaml(self, monkeypatch):
        monkeypatch.setenv("TFS_URL", COLLECTION)
        config = load_config(
            yaml_fallbacks={"url": "https://yaml.example.com/tfs/C", "username": "y"}
        )
        assert config.server_url == COLLECTION
        assert config.username == "y"

    def test_yaml_fallbacks(self):
        config = load_config(
            yaml_fallbacks={
                "url": COLLECTION,
                "insecure": True,
                "debug": True,
                "max_parallel_downloads": 8,
                "max_retries": 0,
            }
        )
        assert config.insecure is True
        assert config.debug is True
        assert config.max_parallel_downloads == 8
        assert config.max_retries == 0

    def test_env_false_overrides_yaml_true(self, monkeypatch):
        monkeypatch.setenv("TFS_INSECURE", "false")
        config = load_config(url=COLLECTION, yaml_fallbacks={"insecure": True})
        assert config.insecure is False

    def test_cli_flags_win(self, monkeypatch):
        monkeypatch.setenv("TFS_DEBUG", "0")
        config = load_config(url=COLLECTION, debug=True, insecure=True)
        assert config.debug is True
        assert config.insecure is True

    @pytest.mark.parametrize(
        "name,value",
        [
            ("TFS_MAX_PARALLEL_DOWNLOADS", "1"),
            ("TFS_MAX_PARALLEL_DOWNLOADS", "64"),
            ("TFS_MAX_RETRIES", "0"),
            ("TFS_MAX_RETRIES", "10"),
        ],
    )
    def test_bounds_accepted(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        config = load_config(url=COLLECTION)
        field = (
            "max_parallel_downloads"
            if name == "TFS_MAX_PARALLEL_DOWNLOADS"
            else "max_retries"
        )
        assert getattr(config, field) == int(value)

    @pytest.mark.parametrize(
        "name,value",
        [
            ("TFS_MAX_PARALLEL_DOWNLOADS", "0"),
            ("TFS_MAX_PARALLEL_DOWNLOADS", "65"),
            ("TFS_MAX_RETRIES", "11"),
            ("TFS_MAX_RETRIES", "many"),
        ],
    )
    def test_bounds_rejected(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValueError, match=name):
            load_config(url=COLLECTION)

    def test_validation_applied(self):
        with pytest.raises(ValueError, match="without a username"):
            load_config(url=COLLECTION, password="p")
