"""Tests for IdentityResolver and the user map file."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from tf_bridge.bridge.identity import (
    DUPLICATES_SECTION,
    MAPPING_SECTION,
    UNKNOWN_SECTION,
    IdentityResolver,
    parse_local_author,
    wrap_comment,
)
from tf_bridge.bridge.models import LocalAuthor, RemoteIdentity, SearchFactor
from tf_bridge.core.memory import InMemoryIdentityService
from tf_bridge.errors import AmbiguousIdentity, IdentityNotFound

JANE = RemoteIdentity(
    unique_name="CORP\\jane", display_name="Jane Doe", email="jane@example.com"
)
BOB = RemoteIdentity(
    unique_name="CORP\\bob", display_name="Bob Smith", email="bob@new.example.com"
)


@pytest.fixture
def service():
    return InMemoryIdentityService([JANE, BOB])


class TestParseLocalAuthor:
    def test_parses_name_and_email(self):
        author = parse_local_author("  Jane Doe <jane@example.com> ")
        assert author == LocalAuthor(name="Jane Doe", email="jane@example.com")

    @pytest.mark.parametrize("text", ["Jane Doe", "<jane@example.com>", "a <b> c"])
    def test_malformed(self, text):
        with pytest.raises(ValueError, match="Incorrect Git user"):
            parse_local_author(text)


class TestResolve:
    def test_resolves_by_email(self, service, author):
        resolver = IdentityResolver(service)
        assert resolver.resolve(author) == JANE
        assert service.calls == [(SearchFactor.GENERAL, ("jane@example.com",))]

    def test_cached_after_first_resolution(self, service, author):
        resolver = IdentityResolver(service)
        resolver.resolve(author)
        resolver.resolve(author)
        assert len(service.calls) == 1

    def test_not_found(self, service):
        resolver = IdentityResolver(service)
        ghost = LocalAuthor(name="Ghost", email="ghost@example.com")
        with pytest.raises(IdentityNotFound):
            resolver.resolve(ghost)
        # A failed search is not repeated
        calls = len(service.calls)
        with pytest.raises(IdentityNotFound):
            resolver.resolve(ghost)
        assert len(service.calls) == calls

    def test_ambiguous(self):
        service = InMemoryIdentityService(
            [
                RemoteIdentity(unique_name="CORP\\sam", email="sam@example.com"),
                RemoteIdentity(unique_name="CORP\\samuel", email="sam@example.com"),
            ]
        )
        resolver = IdentityResolver(service)
        with pytest.raises(AmbiguousIdentity) as exc_info:
            resolver.resolve(LocalAuthor(name="Sam", email="sam@example.com"))
        assert exc_info.value.candidates == ["CORP\\sam", "CORP\\samuel"]

    def test_without_service_only_map_is_used(self, author):
        resolver = IdentityResolver()
        with pytest.raises(IdentityNotFound):
            resolver.resolve(author)
        resolver.map(author, JANE)
        assert resolver.resolve(author) == JANE


class TestSearchRemote:
    def test_searches_are_batched_per_factor(self, service, author):
        bob = LocalAuthor(name="Bob Smith", email="bob@old.example.com")
        resolver = IdentityResolver(service)
        resolver.add_local_authors([author, bob])

        found = resolver.search_remote()

        assert found == 2
        assert service.calls == [
            (SearchFactor.GENERAL, ("bob@old.example.com", "jane@example.com")),
            (SearchFactor.MAIL_ADDRESS, ("bob@old.example.com",)),
            (SearchFactor.GENERAL, ("Bob Smith",)),
        ]
        assert resolver.resolve(bob) == BOB
        assert resolver.is_complete
        assert resolver.is_consistent

    def test_unknown_authors_reported(self, service):
        ghost = LocalAuthor(name="Ghost", email="ghost@example.com")
        resolver = IdentityResolver(service)
        resolver.add_local_authors([ghost])
        assert resolver.search_remote() == 0
        assert resolver.unknown_authors() == [ghost]
        assert not resolver.is_complete

    def test_reverse_lookup(self, service, author):
        resolver = IdentityResolver(service)
        resolver.resolve(author)
        assert resolver.local_author_for("corp\\JANE") == author
        assert resolver.local_author_for("CORP\\nobody") is None


class TestCheck:
    def test_vanished_identity_removed(self, author):
        service = InMemoryIdentityService([])
        resolver = IdentityResolver(service)
        resolver.map(author, JANE)

        assert resolver.check() == ["CORP\\jane"]
        assert resolver.unknown_authors() == [author]

    def test_valid_identity_kept(self, service, author):
        resolver = IdentityResolver(service)
        resolver.map(author, JANE)
        assert resolver.check() == []
        assert resolver.resolve(author) == JANE


class TestUserMapFile:
    def test_load_mapping_section_only(self, tmp_path: Path):
        path = tmp_path / "users.map"
        path.write_text(
            "# header\n"
            "[mapping]\n"
            "    Jane Doe <jane@example.com> = CORP\\jane  # inline comment\n"
            "    broken line without separator\n"
            "    Bad <bad@example.com> = not a user\n"
            "    Live <live@example.com> = live@outlook.com\n"
            "[unknown]\n"
            "    Ghost <ghost@example.com> = CORP\\ghost\n",
            encoding="utf-8",
        )
        resolver = IdentityResolver(path=path)

        assert resolver.load() == 2
        assert not resolver.is_changed
        jane = resolver.resolve(LocalAuthor(name="Jane Doe", email="jane@example.com"))
        assert jane.unique_name == "CORP\\jane"
        with pytest.raises(IdentityNotFound):
            resolver.resolve(LocalAuthor(name="Ghost", email="ghost@example.com"))

    def test_missing_file_loads_nothing(self, tmp_path: Path):
        assert IdentityResolver(path=tmp_path / "absent.map").load() == 0

    def test_render_sections(self, author):
        resolver = IdentityResolver()
        resolver.map(author, JANE)
        ghost = LocalAuthor(name="Ghost", email="ghost@example.com")
        sam = LocalAuthor(name="Sam", email="sam@example.com")
        resolver.add_local_authors([ghost])
        resolver.map(sam, RemoteIdentity(unique_name="CORP\\sam"))
        resolver.map(sam, RemoteIdentity(unique_name="CORP\\samuel"))

        text = resolver.render()

        assert text.index(MAPPING_SECTION) < text.index(UNKNOWN_SECTION)
        assert text.index(UNKNOWN_SECTION) < text.index(DUPLICATES_SECTION)
        assert "    Jane Doe <jane@example.com> = CORP\\jane\n" in text
        assert "    Ghost <ghost@example.com> = \n" in text
        assert "    Sam <sam@example.com> = CORP\\samuel\n" in text

    def test_save_keeps_backup_and_round_trips(self, tmp_path: Path, author):
        path = tmp_path / "users.map"
        path.write_text("[mapping]\n", encoding="utf-8")
        resolver = IdentityResolver(path=path)
        resolver.map(author, JANE)
        assert resolver.is_changed

        resolver.save()

        assert (tmp_path / "users.map.bak").read_text() == "[mapping]\n"
        assert not resolver.is_changed
        reloaded = IdentityResolver(path=path)
        assert reloaded.load() == 1
        assert reloaded.resolve(author).unique_name == "CORP\\jane"

    def test_failed_write_keeps_user_map(self, tmp_path: Path, author):
        path = tmp_path / "users.map"
        path.write_text("[mapping]\n", encoding="utf-8")
        resolver = IdentityResolver(path=path)
        resolver.map(author, JANE)

        with patch(
            "tf_bridge.bridge.identity.write_atomic", side_effect=OSError("disk full")
        ):
            with pytest.raises(OSError):
                resolver.save()

        assert path.read_text() == "[mapping]\n"
        assert (tmp_path / "users.map.bak").read_text() == "[mapping]\n"
        assert resolver.is_changed

    def test_save_without_path(self):
        with pytest.raises(ValueError):
            IdentityResolver().save()


def test_wrap_comment_lines_are_prefixed():
    lines = wrap_comment("word " * 40)
    assert len(lines) > 1
    assert all(line.startswith("# ") for line in lines)
