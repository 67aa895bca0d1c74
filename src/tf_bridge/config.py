"""Connection configuration for the TFS server.

Reads server connection settings from CLI args, environment variables,
.env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    TFS_URL: Team project collection URL (required)
    TFS_USERNAME: TFS username or DOMAIN\\account (optional, default credentials otherwise)
    TFS_PASSWORD: TFS password or personal access token (optional)
    TFS_INSECURE: Skip SSL verification (optional, default: false)
    TFS_MAX_PARALLEL_DOWNLOADS: Concurrent item downloads per changeset (optional, default: 4)
    TFS_MAX_RETRIES: Retries for transient network errors (optional, default: 3)
"""

import logging
import os
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


@dataclass
class Config:
    server_url: str
    username: str = ""
    password: str = ""
    insecure: bool = False
    debug: bool = False
    max_parallel_downloads: int = 4
    max_retries: int = 3


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If URL format is invalid or a password is given
            without a username.
    """
    config.server_url = config.server_url.strip()

    if not config.server_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid server URL '{config.server_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.server_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid server URL '{config.server_url}': URL must include a hostname"
        )

    config.server_url = config.server_url.removesuffix("/")

    if config.password and not config.username.strip():
        raise ValueError(
            "A TFS password was given without a username. Set TFS_USERNAME environment variable."
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _env_flag(name: str) -> bool | None:
    """True/False from an env var, or None when it is unset."""
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in ("true", "1", "yes", "on")


def _flag(cli: bool, env_name: str, fallback: Any) -> bool:
    if cli:
        return True
    from_env = _env_flag(env_name)
    if from_env is not None:
        return from_env
    return bool(fallback)


def _bounded(
    env_name: str, fallback: Any, default: int, low: int, high: int
) -> int:
    raw = os.getenv(env_name)
    if raw is None:
        return default if fallback is None else int(fallback)
    try:
        value = int(raw)
    except ValueError:
        value = None
    if value is None or not low <= value <= high:
        raise ValueError(
            f"Invalid {env_name} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    url: str | None = None,
    username: str | None = None,
    password: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Resolve the connection settings from every source.

    Each field takes the first value found in: the argument (CLI), the
    environment (``load_dotenv()`` must already have run for ``.env``
    values to count), *yaml_fallbacks* (the ``tfs`` config section or the
    repository configuration), then the built-in default.

    Raises:
        ValueError: No collection URL was found, a numeric env var is out
            of range, or ``validate_config()`` rejects the result.
    """
    fb = yaml_fallbacks or {}

    server_url = url or os.getenv("TFS_URL") or fb.get("url")
    if not server_url:
        raise ValueError(
            "TFS collection URL not found. Set TFS_URL environment variable, "
            "pass --url CLI argument, or add 'url' to config.yml."
        )

    config = Config(
        server_url=server_url,
        username=(
            username or os.getenv("TFS_USERNAME") or fb.get("username") or ""
        ).strip(),
        password=(
            password or os.getenv("TFS_PASSWORD") or fb.get("password") or ""
        ).strip(),
        insecure=_flag(insecure, "TFS_INSECURE", fb.get("insecure")),
        debug=_flag(debug, "TFS_DEBUG", fb.get("debug")),
        max_parallel_downloads=_bounded(
            "TFS_MAX_PARALLEL_DOWNLOADS",
            fb.get("max_parallel_downloads"),
            4,
            1,
            64,
        ),
        max_retries=_bounded(
            "TFS_MAX_RETRIES", fb.get("max_retries"), 3, 0, 10
        ),
    )
    validate_config(config)
    return config
