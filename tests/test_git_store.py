"""Tests for GitObjectStore against real repositories in tmp_path."""

from datetime import datetime, timedelta, timezone

import pytest
from dulwich.objects import Tag

from conftest import SERVER_PATH
from tf_bridge.bridge.checkin import CheckinTask
from tf_bridge.bridge.fetch import FetchTask
from tf_bridge.bridge.models import (
    CheckinStatus,
    FetchStatus,
    LocalAuthor,
    TreeSnapshot,
)
from tf_bridge.core.git_store import GitObjectStore

JANE = LocalAuthor(name="Jane Doe", email="jane@example.com")
BOT = LocalAuthor(name="Build Bot", email="bot@example.com")


@pytest.fixture
def git(tmp_path):
    store = GitObjectStore.init(tmp_path / "work")
    yield store
    store.close()


def _commit(git, files, message, parents=(), time=None):
    snapshot = TreeSnapshot.from_files(
        {path: git.write_blob(data) for path, data in files.items()}
    )
    commit_id = git.create_commit(
        snapshot, list(parents), JANE, BOT, message, time=time
    )
    git.update_ref("refs/heads/master", commit_id)
    return commit_id


class TestReading:
    def test_empty_repository_has_no_head(self, git):
        assert git.head() is None
        assert git.git_dir.name == ".git"

    def test_commit_round_trip(self, git):
        moment = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone(timedelta(hours=2)))
        first = _commit(git, {"a.txt": b"1"}, "First\n\nbody", time=moment)
        second = _commit(git, {"a.txt": b"2"}, "Grüße", parents=[first])

        info = git.read_commit(second)
        assert info.parents == (first,)
        assert info.author == JANE
        assert info.committer == BOT
        assert info.message == "Grüße"

        first_info = git.read_commit(first)
        assert first_info.time == moment
        assert first_info.time.utcoffset() == timedelta(hours=2)
        assert first_info.summary == "First"

    def test_head_follows_branch(self, git):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        assert git.head() == commit_id

    def test_snapshot_lists_nested_files(self, git):
        commit_id = _commit(git, {"a.txt": b"1", "dir/sub/b.txt": b"2"}, "one")
        snapshot = git.read_snapshot(commit_id)
        assert sorted(snapshot.files()) == ["a.txt", "dir/sub/b.txt"]
        assert git.read_blob(snapshot.files()["dir/sub/b.txt"]) == b"2"

    def test_has_commit(self, git):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        blob_id = git.read_snapshot(commit_id).files()["a.txt"]
        assert git.has_commit(commit_id)
        assert not git.has_commit(blob_id)
        assert not git.has_commit("0" * 40)

    def test_read_blob_rejects_commit(self, git):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        with pytest.raises(KeyError):
            git.read_blob(commit_id)

    def test_commits_between(self, git):
        a = _commit(git, {"f": b"1"}, "a")
        b = _commit(git, {"f": b"2"}, "b", parents=[a])
        c = _commit(git, {"f": b"3"}, "c", parents=[b])

        assert git.commits_between(None, c) == [a, b, c]
        assert git.commits_between(a, c) == [b, c]
        assert git.commits_between(c, c) == []


class TestWriting:
    def test_write_blob_is_content_addressed(self, git):
        assert git.write_blob(b"same") == git.write_blob(b"same")

    def test_missing_blob_rejected(self, git):
        snapshot = TreeSnapshot.from_files({"a.txt": "f" * 40})
        with pytest.raises(KeyError, match="a.txt"):
            git.create_commit(snapshot, [], JANE, JANE, "broken")

    def test_lightweight_tag(self, git):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        git.tag("TFS_C1", commit_id)
        assert git.repo.refs[b"refs/tags/TFS_C1"] == commit_id.encode("ascii")

    def test_annotated_tag(self, git):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        git.tag("TFS_C2", commit_id, message="Changeset 2")
        tag = git.repo[git.repo.refs[b"refs/tags/TFS_C2"]]
        assert isinstance(tag, Tag)
        assert tag.object[1] == commit_id.encode("ascii")
        assert tag.message == b"Changeset 2"

    def test_update_branch_ref(self, git):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        git.update_ref("refs/remotes/tfs/default", commit_id)
        ref = b"refs/remotes/tfs/default"
        assert git.repo.refs[ref] == commit_id.encode("ascii")
        assert git.read_ref("refs/remotes/tfs/default") == commit_id

    def test_fetch_head_written_as_file(self, git):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        git.update_ref("FETCH_HEAD", commit_id)
        assert (git.git_dir / "FETCH_HEAD").read_text() == f"{commit_id}\n"
        assert git.read_ref("FETCH_HEAD") == commit_id

    def test_missing_ref(self, git):
        assert git.read_ref("FETCH_HEAD") is None
        assert git.read_ref("refs/heads/nope") is None

    def test_invalid_pseudo_ref_rejected(self, git):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        with pytest.raises(ValueError, match="Invalid ref"):
            git.update_ref("../escape", commit_id)

    def test_reopen(self, git, tmp_path):
        commit_id = _commit(git, {"a.txt": b"1"}, "one")
        reopened = GitObjectStore.open(tmp_path / "work")
        try:
            assert reopened.head() == commit_id
        finally:
            reopened.close()


class TestCheckout:
    def test_checkout_writes_work_tree(self, git, tmp_path):
        snapshot = TreeSnapshot.from_files(
            {"a.txt": git.write_blob(b"alpha\n"), "src/b.py": git.write_blob(b"x = 1\n")}
        )
        commit_id = git.create_commit(snapshot, [], JANE, JANE, "Import")

        git.checkout("master", commit_id)

        assert git.head() == commit_id
        assert git.read_ref("refs/heads/master") == commit_id
        assert (tmp_path / "work" / "a.txt").read_bytes() == b"alpha\n"
        assert (tmp_path / "work" / "src" / "b.py").read_bytes() == b"x = 1\n"

    def test_checkout_other_branch_moves_head(self, git):
        first = _commit(git, {"a.txt": b"1"}, "one")
        second = _commit(git, {"a.txt": b"2"}, "two", parents=[first])

        git.checkout("tfs", first)

        assert git.head() == first
        assert git.read_ref("refs/heads/master") == second
        assert git.read_ref("refs/heads/tfs") == first

    def test_bare_checkout_moves_refs_only(self, tmp_path):
        bare = GitObjectStore.init(tmp_path / "bare.git", bare=True)
        try:
            snapshot = TreeSnapshot.from_files({"a.txt": bare.write_blob(b"1")})
            commit_id = bare.create_commit(snapshot, [], JANE, JANE, "one")
            bare.checkout("master", commit_id)

            assert bare.head() == commit_id
            assert bare.git_dir == tmp_path / "bare.git"
            assert not (tmp_path / "bare.git" / "a.txt").exists()
        finally:
            bare.close()


class TestTasksOverGit:
    def test_fetch_into_git(self, git, deep_config, changeset_map, remote):
        remote.commit({f"{SERVER_PATH}/a.txt": b"one"}, comment="Add a")
        remote.commit({f"{SERVER_PATH}/b/c.txt": b"nested"}, comment="Add c")
        remote.commit({f"{SERVER_PATH}/a.txt": b"two"}, comment="Edit a")

        report = FetchTask(deep_config, changeset_map, git, remote).run()

        assert report.status == FetchStatus.OK
        tip = report.fetch_head
        assert git.read_ref("FETCH_HEAD") == tip
        files = git.read_snapshot(tip).files()
        assert git.read_blob(files["a.txt"]) == b"two"
        assert git.read_blob(files["b/c.txt"]) == b"nested"
        assert len(git.commits_between(None, tip)) == 3
        assert git.head() is None

    def test_check_in_from_git(self, git, deep_config, changeset_map, remote, workspace):
        first = _commit(git, {"f1": b"hello"}, "Add f1")
        second = _commit(git, {"f2": b"hello"}, "Move f1", parents=[first])

        report = CheckinTask(
            deep_config, changeset_map, git, remote, workspace
        ).run()

        assert report.status == CheckinStatus.OK
        assert changeset_map.get_commit(2) == second
        assert git.repo.refs[b"refs/tags/TFS_C2"] == second.encode("ascii")
