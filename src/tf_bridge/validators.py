"""
Input validation functions for tf_bridge.

Validates server paths, relative item paths and remote user names before
they are persisted or sent to the server.
"""

import re

_INVALID_ITEM_CHARS = set('"/:<>\\|*?;')
_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}
_DOMAIN_ACCOUNT = re.compile(r"^[^\\/\s]+\\[^\\/\s]+$")

MAX_SERVER_PATH_LENGTH = 259


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Server path")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_item_name(name: str) -> tuple[bool, str]:
    """
    Validate a single path segment of a server item.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not name or not name.strip():
        return (False, format_validation_error("Item name", "cannot be empty"))
    if name in (".", ".."):
        return (
            False,
            format_validation_error("Item name", f"cannot be '{name}'"),
        )
    bad = sorted(set(name) & _INVALID_ITEM_CHARS)
    if bad:
        return (
            False,
            format_validation_error(
                "Item name", f"'{name}' contains invalid characters {bad}"
            ),
        )
    if name.endswith((" ", ".")):
        return (
            False,
            format_validation_error(
                "Item name", f"'{name}' cannot end with a space or period"
            ),
        )
    if name.split(".")[0].upper() in _RESERVED_NAMES:
        return (
            False,
            format_validation_error(
                "Item name", f"'{name}' is a reserved name"
            ),
        )
    return (True, "")


def validate_server_path(server_path: str) -> tuple[bool, str]:
    """
    Validate a server path.

    Args:
        server_path: The server path to validate, e.g. ``$/Project/Folder``

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Must start with ``$/``
        - Cannot exceed MAX_SERVER_PATH_LENGTH characters
        - Cannot have empty path segments
        - Each segment must be a valid item name
    """
    if not server_path or not server_path.startswith("$/"):
        return (
            False,
            format_validation_error("Server path", "must start with '$/'"),
        )
    if len(server_path) > MAX_SERVER_PATH_LENGTH:
        return (
            False,
            format_validation_error(
                "Server path",
                f"exceeds maximum length of {MAX_SERVER_PATH_LENGTH}",
            ),
        )

    relative = server_path[2:].rstrip("/")
    if not relative:
        return (True, "")
    if "//" in relative:
        return (
            False,
            format_validation_error(
                "Server path", "cannot have empty path segments"
            ),
        )
    for segment in relative.split("/"):
        ok, reason = validate_item_name(segment)
        if not ok:
            return (False, reason)
    return (True, "")


def validate_item_path(path: str) -> tuple[bool, str]:
    """
    Validate a repository-relative item path (``folder/file.txt``).

    Relative paths never start with a separator and never contain ``..``.
    """
    if not path:
        return (False, format_validation_error("Item path", "cannot be empty"))
    if path.startswith("/"):
        return (
            False,
            format_validation_error(
                "Item path", "cannot start with a separator"
            ),
        )
    for segment in path.split("/"):
        ok, reason = validate_item_name(segment)
        if not ok:
            return (False, reason)
    return (True, "")


def validate_tfs_user(unique_name: str) -> tuple[bool, str]:
    """
    Validate a remote user name as written in the user map.

    Accepted forms are ``DOMAIN\\account`` and a live id (``user@host``).
    """
    name = unique_name.strip()
    if not name:
        return (False, format_validation_error("TFS user", "cannot be empty"))
    if _DOMAIN_ACCOUNT.match(name) or ("@" in name and "\\" not in name):
        return (True, "")
    return (
        False,
        format_validation_error(
            "TFS user",
            f"'{name}' must be DOMAIN\\account or a live id (user@host)",
        ),
    )


MAX_SHELVESET_NAME_LENGTH = 64


def validate_shelveset_name(name: str) -> tuple[bool, str]:
    """
    Validate a shelveset name before it is sent to the server.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not name or not name.strip():
        return (
            False,
            format_validation_error("Shelveset name", "cannot be empty"),
        )
    if len(name) > MAX_SHELVESET_NAME_LENGTH:
        return (
            False,
            format_validation_error(
                "Shelveset name",
                f"cannot exceed {MAX_SHELVESET_NAME_LENGTH} characters",
            ),
        )
    bad = sorted(set(name) & _INVALID_ITEM_CHARS)
    if bad:
        return (
            False,
            format_validation_error(
                "Shelveset name", f"'{name}' contains invalid characters {bad}"
            ),
        )
    if name.endswith(" "):
        return (
            False,
            format_validation_error(
                "Shelveset name", f"'{name}' cannot end with a space"
            ),
        )
    return (True, "")
