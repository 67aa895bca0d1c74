"""LocalObjectStore over a Git repository (dulwich, no git binary required)."""

from __future__ import annotations

import logging
import re
import time as _time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

from dulwich.index import commit_tree
from dulwich.object_store import iter_tree_contents
from dulwich.objects import S_ISGITLINK, Blob, Commit, Tag
from dulwich.repo import Repo

from tf_bridge.bridge.models import (
    CommitInfo,
    LocalAuthor,
    TreeEntry,
    TreeSnapshot,
)
from tf_bridge.file_handler import write_atomic

logger = logging.getLogger(__name__)

_IDENT = re.compile(rb"^(?P<name>.*?)\s*<(?P<email>[^>]*)>\s*$")
_PSEUDO_REF = re.compile(r"^[A-Z][A-Z_]*HEAD$")
FILE_MODE = 0o100644


def _ident(author: LocalAuthor) -> bytes:
    return f"{author.name} <{author.email}>".encode("utf-8")


def _parse_ident(raw: bytes) -> LocalAuthor:
    match = _IDENT.match(raw)
    if match is None:
        return LocalAuthor(name=raw.decode("utf-8", "replace"), email="")
    return LocalAuthor(
        name=match.group("name").decode("utf-8", "replace"),
        email=match.group("email").decode("utf-8", "replace"),
    )


def _timestamp(moment: datetime | None) -> tuple[int, int]:
    """``(seconds, utc offset seconds)`` for a commit header."""
    if moment is None:
        return int(_time.time()), 0
    offset = moment.utcoffset()
    return int(moment.timestamp()), int(offset.total_seconds()) if offset else 0


class GitObjectStore:
    """Read and write commits, trees and refs of a Git repository.

    Snapshots contain file entries only; Git has no empty folders.
    Symlinks are read as files holding the link target, submodules are
    skipped.

    Args:
        repo: An open dulwich ``Repo``.
    """

    def __init__(self, repo: Repo) -> None:
        self.repo = repo

    @classmethod
    def open(cls, path: Path) -> GitObjectStore:
        """Open a work tree or a git directory."""
        return cls(Repo(str(path)))

    @classmethod
    def init(cls, path: Path, bare: bool = False) -> GitObjectStore:
        """Create a new repository at *path*, with a work tree unless *bare*."""
        path.mkdir(parents=True, exist_ok=True)
        if bare:
            return cls(Repo.init_bare(str(path)))
        return cls(Repo.init(str(path)))

    @property
    def git_dir(self) -> Path:
        return Path(self.repo.controldir())

    def close(self) -> None:
        self.repo.close()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def head(self) -> str | None:
        try:
            return self.repo.refs[b"HEAD"].decode("ascii")
        except KeyError:
            return None

    def has_commit(self, commit_id: str) -> bool:
        sha = commit_id.encode("ascii")
        if sha not in self.repo.object_store:
            return False
        return isinstance(self.repo[sha], Commit)

    def _commit(self, commit_id: str) -> Commit:
        obj = self.repo[commit_id.encode("ascii")]
        if not isinstance(obj, Commit):
            raise KeyError(f"{commit_id} is not a commit")
        return obj

    def read_commit(self, commit_id: str) -> CommitInfo:
        commit = self._commit(commit_id)
        tz = timezone(timedelta(seconds=commit.author_timezone))
        encoding = (commit.encoding or b"utf-8").decode("ascii")
        return CommitInfo(
            commit_id=commit_id,
            parents=tuple(p.decode("ascii") for p in commit.parents),
            author=_parse_ident(commit.author),
            committer=_parse_ident(commit.committer),
            message=commit.message.decode(encoding, "replace"),
            time=datetime.fromtimestamp(commit.author_time, tz=tz),
        )

    def read_snapshot(self, commit_id: str) -> TreeSnapshot:
        commit = self._commit(commit_id)
        entries = []
        for entry in iter_tree_contents(self.repo.object_store, commit.tree):
            if S_ISGITLINK(entry.mode):
                logger.debug("Skipping submodule %s", entry.path)
                continue
            entries.append(
                TreeEntry(
                    path=entry.path.decode("utf-8"),
                    content_id=entry.sha.decode("ascii"),
                )
            )
        return TreeSnapshot.from_entries(entries)

    def read_blob(self, content_id: str) -> bytes:
        obj = self.repo[content_id.encode("ascii")]
        if not isinstance(obj, Blob):
            raise KeyError(f"{content_id} is not a blob")
        return obj.as_raw_string()

    def commits_between(self, since: str | None, until: str) -> list[str]:
        chain: list[str] = []
        current: str | None = until
        while current is not None and current != since:
            chain.append(current)
            parents = self._commit(current).parents
            current = parents[0].decode("ascii") if parents else None
        chain.reverse()
        return chain

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write_blob(self, data: bytes) -> str:
        blob = Blob.from_string(data)
        self.repo.object_store.add_object(blob)
        return blob.id.decode("ascii")

    def create_commit(
        self,
        snapshot: TreeSnapshot,
        parents: Sequence[str],
        author: LocalAuthor,
        committer: LocalAuthor,
        message: str,
        time: datetime | None = None,
    ) -> str:
        blobs = [
            (
                entry.path.encode("utf-8"),
                (entry.content_id or "").encode("ascii"),
                FILE_MODE,
            )
            for entry in snapshot.entries
            if not entry.is_directory
        ]
        for path, sha, _ in blobs:
            if sha not in self.repo.object_store:
                raise KeyError(f"Missing blob for {path.decode('utf-8')}")
        tree_id = commit_tree(self.repo.object_store, blobs)

        seconds, offset = _timestamp(time)
        commit = Commit()
        commit.tree = tree_id
        commit.parents = [p.encode("ascii") for p in parents]
        commit.author = _ident(author)
        commit.committer = _ident(committer)
        commit.author_time = commit.commit_time = seconds
        commit.author_timezone = commit.commit_timezone = offset
        commit.encoding = b"UTF-8"
        commit.message = message.encode("utf-8")
        self.repo.object_store.add_object(commit)
        logger.debug(
            "Created commit %s (%d files)",
            commit.id.decode("ascii")[:12],
            len(blobs),
        )
        return commit.id.decode("ascii")

    def tag(self, name: str, commit_id: str, message: str = "") -> None:
        """Create a lightweight tag, or an annotated one when *message* is set."""
        ref = b"refs/tags/" + name.encode("utf-8")
        target = commit_id.encode("ascii")
        if message:
            seconds, offset = _timestamp(None)
            tag = Tag()
            tag.name = name.encode("utf-8")
            tag.object = (Commit, target)
            tag.tagger = self._commit(commit_id).committer
            tag.tag_time = seconds
            tag.tag_timezone = offset
            tag.message = message.encode("utf-8")
            self.repo.object_store.add_object(tag)
            target = tag.id
        self.repo.refs[ref] = target

    def update_ref(self, ref: str, commit_id: str) -> None:
        """Point *ref* at *commit_id*.

        ``HEAD`` and names under ``refs/`` go through the refs container.
        Pseudo refs such as ``FETCH_HEAD`` are plain files in the git
        directory, outside what dulwich accepts as a ref name.
        """
        if ref == "HEAD" or ref.startswith("refs/"):
            self.repo.refs[ref.encode("utf-8")] = commit_id.encode("ascii")
            return
        if not _PSEUDO_REF.match(ref):
            raise ValueError(f"Invalid ref name: {ref}")
        write_atomic(self.git_dir / ref, f"{commit_id}\n")
        logger.debug("Wrote %s -> %s", ref, commit_id[:12])

    def read_ref(self, ref: str) -> str | None:
        """Commit id *ref* points at, or ``None`` when it does not exist."""
        if ref == "HEAD" or ref.startswith("refs/"):
            try:
                return self.repo.refs[ref.encode("utf-8")].decode("ascii")
            except KeyError:
                return None
        path = self.git_dir / ref
        if not _PSEUDO_REF.match(ref) or not path.is_file():
            return None
        first = path.read_text(encoding="ascii").split(maxsplit=1)
        return first[0] if first else None

    def checkout(self, branch: str, commit_id: str) -> None:
        """Point ``refs/heads/<branch>`` at *commit_id* and attach HEAD to it.

        The index and work tree are rewritten from the commit's tree; a
        bare repository only moves its refs.
        """
        ref = b"refs/heads/" + branch.encode("utf-8")
        self.repo.refs[ref] = commit_id.encode("ascii")
        self.repo.refs.set_symbolic_ref(b"HEAD", ref)
        if not self.repo.bare:
            self.repo.reset_index()
        logger.info("Checked out %s at %s", branch, commit_id[:12])
