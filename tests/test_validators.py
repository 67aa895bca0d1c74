"""Tests for tf_bridge.validators."""

import pytest

from tf_bridge.validators import (
    MAX_SERVER_PATH_LENGTH,
    MAX_SHELVESET_NAME_LENGTH,
    format_validation_error,
    validate_item_name,
    validate_item_path,
    validate_server_path,
    validate_shelveset_name,
    validate_tfs_user,
)


def test_format_validation_error():
    assert format_validation_error("Server path", "is bad") == "Server path is bad"


class TestItemName:
    @pytest.mark.parametrize("name", ["a.txt", "README", "console.d", "with space"])
    def test_valid(self, name):
        assert validate_item_name(name) == (True, "")

    @pytest.mark.parametrize(
        "name,reason",
        [
            ("", "cannot be empty"),
            ("..", "cannot be '..'"),
            ("a:b", "invalid characters"),
            ("a|b", "invalid characters"),
            ("trailing.", "space or period"),
            ("COM1", "reserved"),
            ("nul.txt", "reserved"),
            ("con.d", "reserved"),
        ],
    )
    def test_invalid(self, name, reason):
        ok, message = validate_item_name(name)
        assert not ok
        assert reason in message


class TestServerPath:
    @pytest.mark.parametrize("path", ["$/", "$/Project", "$/Project/Main/"])
    def test_valid(self, path):
        assert validate_server_path(path)[0]

    def test_must_start_with_root(self):
        ok, message = validate_server_path("/Project")
        assert not ok
        assert "$/" in message

    def test_too_long(self):
        path = "$/" + "a" * MAX_SERVER_PATH_LENGTH
        assert "maximum length" in validate_server_path(path)[1]

    def test_empty_segment(self):
        assert "empty path segments" in validate_server_path("$/a//b")[1]

    def test_bad_segment(self):
        assert not validate_server_path("$/a/b?c")[0]


class TestItemPath:
    def test_valid(self):
        assert validate_item_path("src/app/main.py") == (True, "")

    @pytest.mark.parametrize("path", ["", "/abs", "a/../b", "a//b"])
    def test_invalid(self, path):
        assert not validate_item_path(path)[0]


class TestTfsUser:
    @pytest.mark.parametrize("name", ["CORP\\jdoe", "jdoe@example.com", " CORP\\jdoe "])
    def test_valid(self, name):
        assert validate_tfs_user(name)[0]

    @pytest.mark.parametrize("name", ["", "jdoe", "CORP\\a\\b", "CORP\\j doe"])
    def test_invalid(self, name):
        assert not validate_tfs_user(name)[0]


class TestShelvesetName:
    @pytest.mark.parametrize(
        "name", ["wip", "Fix login (draft)", "a" * MAX_SHELVESET_NAME_LENGTH]
    )
    def test_valid(self, name):
        assert validate_shelveset_name(name) == (True, "")

    @pytest.mark.parametrize(
        "name,reason",
        [
            ("", "cannot be empty"),
            ("   ", "cannot be empty"),
            ("a" * (MAX_SHELVESET_NAME_LENGTH + 1), "cannot exceed"),
            ("wip/1", "invalid characters"),
            ("wip ", "cannot end with a space"),
        ],
    )
    def test_invalid(self, name, reason):
        valid, message = validate_shelveset_name(name)
        assert not valid
        assert message.startswith("Shelveset name")
        assert reason in message
