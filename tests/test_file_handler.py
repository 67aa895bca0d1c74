"""Tests for file_handler module: atomic writes and encoding detection."""

import os
from unittest.mock import patch

import pytest

from tf_bridge.file_handler import (
    BINARY_ENCODING,
    detect_encoding,
    read_file_with_encoding,
    write_atomic,
)

# =============================================================================
# write_atomic
# =============================================================================


class TestWriteAtomic:
    def test_creates_file_and_parents(self, tmp_path):
        target = tmp_path / "tf" / "nested" / "changesets.json"
        write_atomic(target, "{}\n")
        assert target.read_text() == "{}\n"

    def test_replaces_existing(self, tmp_path):
        target = tmp_path / "f.txt"
        target.write_text("old")
        write_atomic(target, "new")
        assert target.read_text() == "new"

    def test_newlines_not_translated(self, tmp_path):
        target = tmp_path / "f.txt"
        write_atomic(target, "a\nb\n")
        assert target.read_bytes() == b"a\nb\n"

    def test_encoding(self, tmp_path):
        target = tmp_path / "f.txt"
        write_atomic(target, "café", encoding="latin-1")
        assert target.read_bytes() == b"caf\xe9"

    def test_failure_keeps_original_and_cleans_up(self, tmp_path):
        target = tmp_path / "f.txt"
        target.write_text("original")
        with patch("tf_bridge.file_handler.os.replace", side_effect=OSError("disk")):
            with pytest.raises(OSError, match="disk"):
                write_atomic(target, "new")
        assert target.read_text() == "original"
        assert os.listdir(tmp_path) == ["f.txt"]

    def test_unencodable_content_cleans_up(self, tmp_path):
        target = tmp_path / "f.txt"
        with pytest.raises(UnicodeEncodeError):
            write_atomic(target, "☃", encoding="ascii")
        assert not target.exists()
        assert os.listdir(tmp_path) == []


# =============================================================================
# detect_encoding
# =============================================================================


class TestDetectEncoding:
    def test_empty_is_utf8(self):
        assert detect_encoding(b"") == "utf-8"

    def test_ascii_reported_as_utf8(self):
        assert detect_encoding(b"plain old text\n") == "utf-8"

    def test_utf8(self):
        text = "Grüße aus München, naïve café déjà vu\n" * 4
        assert detect_encoding(text.encode("utf-8")) == "utf-8"

    def test_nul_bytes_are_binary(self):
        assert detect_encoding(b"PK\x03\x04\x00\x00\x01") == BINARY_ENCODING

    def test_undetectable_is_binary(self):
        with patch("tf_bridge.file_handler.from_bytes") as mock_from_bytes:
            mock_from_bytes.return_value.best.return_value = None
            assert detect_encoding(b"\xff\xfe\xfd") == BINARY_ENCODING

    def test_codec_name_canonicalised(self):
        with patch("tf_bridge.file_handler.from_bytes") as mock_from_bytes:
            mock_from_bytes.return_value.best.return_value.encoding = "utf_8"
            assert detect_encoding(b"x") == "utf-8"


# =============================================================================
# read_file_with_encoding
# =============================================================================


class TestReadFileWithEncoding:
    def test_text(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_bytes("hello wörld, ça va très bien\n".encode("utf-8"))
        content, encoding = read_file_with_encoding(f)
        assert encoding == "utf-8"
        assert content == "hello wörld, ça va très bien\n"

    def test_binary_decoded_with_replacement(self, tmp_path):
        f = tmp_path / "a.bin"
        f.write_bytes(b"\x00\xff")
        content, encoding = read_file_with_encoding(f)
        assert encoding == BINARY_ENCODING
        assert content == "\x00�"
