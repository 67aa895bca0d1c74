"""Path helpers for ``/``-separated item paths.

Repository-relative paths never carry a leading separator. Server paths
are rooted at ``$/``. All comparisons are per segment, so ``folder1/a2``
and ``folder1/ab2`` share the prefix ``folder1`` and not ``folder1/a``.
"""

from __future__ import annotations

SEPARATOR = "/"
SERVER_ROOT = "$/"


def _segments(path: str) -> list[str]:
    return [s for s in path.split(SEPARATOR) if s] if path else []


def common_prefix(path_a: str, path_b: str) -> tuple[str, str, str]:
    """Split two paths into their longest common segment prefix.

    Returns:
        ``(prefix, remainder_a, remainder_b)``. Swapping the arguments
        swaps the remainders and keeps the prefix.

    Examples:
        >>> common_prefix("folder1/foldera2", "folder1/folderb2")
        ('folder1', 'foldera2', 'folderb2')
        >>> common_prefix("a/b", "a/b")
        ('a/b', '', '')
        >>> common_prefix("", "x/y")
        ('', '', 'x/y')
    """
    segments_a = _segments(path_a)
    segments_b = _segments(path_b)

    shared = 0
    for seg_a, seg_b in zip(segments_a, segments_b):
        if seg_a != seg_b:
            break
        shared += 1

    return (
        SEPARATOR.join(segments_a[:shared]),
        SEPARATOR.join(segments_a[shared:]),
        SEPARATOR.join(segments_b[shared:]),
    )


def parent(path: str) -> str:
    """Parent folder of *path* (``""`` for top-level items)."""
    head, _, _ = path.rstrip(SEPARATOR).rpartition(SEPARATOR)
    return head


def file_name(path: str) -> str:
    return path.rstrip(SEPARATOR).rpartition(SEPARATOR)[2]


def folder_depth(path: str) -> int:
    """Number of segments in *path* (``a/b/c`` has depth 3)."""
    return len(_segments(path))


def is_ancestor(ancestor: str, path: str) -> bool:
    """True when *ancestor* is *path* or one of its parent folders."""
    prefix, rest_ancestor, _ = common_prefix(ancestor, path)
    return rest_ancestor == "" and (prefix != "" or ancestor == "")


def ancestors(path: str) -> list[str]:
    """Proper parent folders of *path*, outermost first."""
    segments = _segments(path)
    return [
        SEPARATOR.join(segments[:depth]) for depth in range(1, len(segments))
    ]


def combine(server_root: str, relative: str) -> str:
    """Join a ``$/`` server folder and a relative path."""
    root = server_root.rstrip(SEPARATOR)
    if not relative:
        return root if root != "$" else SERVER_ROOT
    return f"{root}{SEPARATOR}{relative.strip(SEPARATOR)}"


def to_relative(server_root: str, server_path: str) -> str:
    """Inverse of ``combine``.

    Raises:
        ValueError: If *server_path* is not under *server_root*.
    """
    root = server_root.rstrip(SEPARATOR)
    path = server_path.rstrip(SEPARATOR)
    if path.lower() == root.lower():
        return ""
    if not path.lower().startswith(root.lower() + SEPARATOR):
        raise ValueError(f"{server_path} is not under {server_root}")
    return path[len(root) + 1:]
