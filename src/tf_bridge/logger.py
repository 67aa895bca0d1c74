import json
import logging
import os
import sys

from tf_bridge.config_schema import LoggingConfig

DEFAULT_LOG_FILE = "/tmp/tf-bridge.log"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty below WARNING: HTTP connection pool and pack/ref handling
QUIET_LOGGERS = ("urllib3", "requests", "dulwich")


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for structured debug output.

    Produces one JSON object per log record with fields: ts, level, logger, msg.
    Bridge errors logged with ``extra={"context": err.context}`` carry
    that dict as a "context" field; exception info goes to "exc".
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_formatter(debug_format: str, with_name: bool) -> logging.Formatter:
    if debug_format == "json":
        return JsonFormatter(datefmt=DATE_FORMAT)
    fmt = (
        "[%(asctime)s] [%(levelname)s] %(name)s %(message)s"
        if with_name
        else "[%(asctime)s] [%(levelname)s] %(message)s"
    )
    return logging.Formatter(fmt, datefmt=DATE_FORMAT)


def _resolve_level(mode: str, debug: bool, level: str | None) -> int:
    if debug:
        return logging.DEBUG
    default_level = "WARNING" if mode == "file" else "INFO"
    name = (level or os.getenv("LOG_LEVEL") or default_level).upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Configure logging for a process that embeds the bridge.

    Args:
        mode: "file" for file-only logging (hosts that own stdout and
              stderr, such as git remote helpers), "cli" for stderr logging.
        debug: If True, forces DEBUG.
        log_file: Custom log file path (overrides LOG_FILE env var).
        debug_format: "text" (default) or "json" for structured output.
        level: Level name from the ``logging`` config section; wins over
               LOG_LEVEL.

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Default: WARNING for file mode, INFO for CLI mode.
        LOG_FILE: Custom log file path for file mode.
                  Default: /tmp/tf-bridge.log
    """
    log_level = _resolve_level(mode, debug, level)

    if mode == "file":
        # Priority: log_file param > LOG_FILE env var > default
        final_log_file = log_file or os.getenv("LOG_FILE", DEFAULT_LOG_FILE)
        handler: logging.Handler = logging.FileHandler(final_log_file, mode="a")
        handler.setFormatter(_make_formatter(debug_format, with_name=True))
        logging.basicConfig(level=log_level, handlers=[handler])
    else:
        # Stderr keeps stdout free for command output; a log_file adds a
        # second, more detailed handler.
        handlers: list[logging.Handler] = []
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            _make_formatter(debug_format, with_name=False)
        )
        handlers.append(stderr_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, mode="a")
            file_handler.setFormatter(
                _make_formatter(debug_format, with_name=True)
            )
            handlers.append(file_handler)

        logging.basicConfig(level=log_level, handlers=handlers)

    if log_level != logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_config(
    config: LoggingConfig,
    mode: str = "cli",
    debug: bool = False,
    debug_format: str = "text",
) -> None:
    """Apply the ``logging`` section of the unified config."""
    setup_logging(
        mode=mode,
        debug=debug,
        log_file=config.file,
        debug_format=debug_format,
        level=config.level,
    )
