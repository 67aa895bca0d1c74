"""File handler module: atomic writes and encoding detection.

Provides the file I/O infrastructure shared by the metadata stores
(mapping store, repository configuration, user map) and the checkin
staging step, which needs a per-file encoding for every pended item.
"""

import codecs
import os
import tempfile
from pathlib import Path

from charset_normalizer import from_bytes

# Encoding reported for content that is not text
BINARY_ENCODING = "binary"


# =============================================================================
# Atomic writes
# =============================================================================


def write_atomic(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Replace *path* with *content* atomically.

    Writes to a temporary file in the same directory then calls
    ``os.replace()`` so readers never see partial data. Creates the
    parent directory if needed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="\n") as fh:
            fh.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# =============================================================================
# Encoding detection
# =============================================================================


def detect_encoding(raw: bytes) -> str:
    """Detect the text encoding of *raw* with charset-normalizer.

    Empty content is reported as ``utf-8``; content with NUL bytes or
    for which detection fails is reported as ``binary``. ``ascii`` is
    normalised to ``utf-8`` (a strict subset). Names are returned in
    canonical codec form (``utf-8``, ``cp1252``).
    """
    if not raw:
        return "utf-8"
    if b"\x00" in raw:
        return BINARY_ENCODING

    result = from_bytes(raw).best()
    if result is None:
        return BINARY_ENCODING
    encoding = codecs.lookup(result.encoding).name
    if encoding == "ascii":
        encoding = "utf-8"
    return encoding


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Returns:
        Tuple of (content_string, detected_encoding). Binary files are
        decoded as UTF-8 with replacement characters.
    """
    raw = path.read_bytes()
    encoding = detect_encoding(raw)
    if encoding == BINARY_ENCODING:
        return (raw.decode("utf-8", errors="replace"), encoding)
    return (raw.decode(encoding, errors="replace"), encoding)
