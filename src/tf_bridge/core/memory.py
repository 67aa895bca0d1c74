"""Deterministic in-memory implementations of the capability protocols.

These back the unit and scenario tests, and can be used to dry-run a task
against a recorded server state. The remote doubles share one
``InMemoryVersionControlService`` holding a full file table per changeset.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Mapping, Sequence

from tf_bridge.bridge.models import (
    ChangeKind,
    Changeset,
    CommitInfo,
    LocalAuthor,
    PendingChange,
    RemoteIdentity,
    RemoteItem,
    SearchFactor,
    ShelvedChange,
    Shelveset,
    TreeEntry,
    TreeSnapshot,
)
from tf_bridge.core.interfaces import LockLevel
from tf_bridge.errors import (
    CheckinConflict,
    PolicyRejected,
    RemoteError,
    ShelvesetExists,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)

# (content, changeset that last modified the file)
_FileRecord = tuple[bytes, int]


def _is_under(path: str, folder: str) -> bool:
    folder = folder.rstrip("/")
    return path == folder or path.startswith(folder + "/")


def content_hash(data: bytes) -> str:
    """Server-side content hash (MD5 hex, as reported by TFS)."""
    return hashlib.md5(data).hexdigest()


class InMemoryVersionControlService:
    """Changeset history over a fixed file table per version.

    Server paths are ``$/``-rooted. Folders are implicit: a folder exists
    at a version when at least one file lives under it.
    """

    def __init__(self) -> None:
        self._changesets: dict[int, Changeset] = {}
        self._changed_paths: dict[int, set[str]] = {}
        self._trees: dict[int, dict[str, _FileRecord]] = {0: {}}
        self._shelvesets: list[tuple[Shelveset, list[ShelvedChange]]] = []
        self._shelved_content: dict[str, bytes] = {}
        self.failing_downloads: set[str] = set()
        self.download_count = 0

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    @property
    def latest(self) -> int:
        return max(self._trees)

    def commit(
        self,
        files: Mapping[str, bytes | None],
        owner: str = "DOMAIN\\builder",
        comment: str = "",
        created: datetime | None = None,
        committer: str | None = None,
    ) -> int:
        """Record a changeset that sets (or, for ``None``, deletes) files.

        *committer* defaults to *owner*.
        """
        changes: list[PendingChange] = []
        contents: dict[str, bytes] = {}
        current = self._trees[self.latest]
        for path, data in files.items():
            if data is None:
                changes.append(
                    PendingChange(kind=ChangeKind.DELETE, source_path=path)
                )
                continue
            kind = ChangeKind.EDIT if path in current else ChangeKind.ADD
            changes.append(PendingChange(kind=kind, source_path=path))
            contents[path] = data
        return self.apply(changes, contents, owner, comment, created, committer)

    def apply(
        self,
        changes: Sequence[PendingChange],
        contents: Mapping[str, bytes],
        owner: str,
        comment: str,
        created: datetime | None = None,
        committer: str | None = None,
    ) -> int:
        """Apply server-path pending changes in order as one changeset."""
        changeset_id = self.latest + 1
        tree = dict(self._trees[self.latest])
        touched: set[str] = set()

        for change in changes:
            source = change.source_path
            if change.kind in (ChangeKind.ADD, ChangeKind.EDIT):
                if change.is_directory:
                    touched.add(source)
                    continue
                tree[source] = (contents[source], changeset_id)
                touched.add(source)
            elif change.kind == ChangeKind.DELETE:
                doomed = [p for p in tree if _is_under(p, source)]
                if not doomed and not change.is_directory:
                    raise RemoteError(
                        "Item not found", path=source, changeset=changeset_id
                    )
                for path in doomed:
                    del tree[path]
                    touched.add(path)
                touched.add(source)
            else:
                target = change.target_path or ""
                moved = [p for p in tree if _is_under(p, source)]
                if not moved:
                    raise RemoteError(
                        "Item not found", path=source, changeset=changeset_id
                    )
                for path in moved:
                    data, _ = tree.pop(path)
                    new_path = target + path[len(source):]
                    tree[new_path] = (data, changeset_id)
                    touched.update((path, new_path))

        self._trees[changeset_id] = tree
        self._changed_paths[changeset_id] = touched
        self._changesets[changeset_id] = Changeset(
            changeset_id=changeset_id,
            owner=owner,
            committer=committer or owner,
            comment=comment,
            created=created or datetime.now(timezone.utc),
        )
        logger.debug(
            "Recorded changeset %d (%d paths)", changeset_id, len(touched)
        )
        return changeset_id

    # ------------------------------------------------------------------
    # RemoteVersionControlService
    # ------------------------------------------------------------------

    def _tree_at(self, version: int | None) -> dict[str, _FileRecord]:
        if version is None:
            return self._trees[self.latest]
        usable = [v for v in self._trees if v <= version]
        return self._trees[max(usable)]

    def get_item(
        self, path: str, version: int | None = None
    ) -> RemoteItem | None:
        items = self.get_items(path, version, recursive=False)
        return items[0] if items else None

    def get_items(
        self, path: str, version: int | None = None, recursive: bool = True
    ) -> list[RemoteItem]:
        tree = self._tree_at(version)
        path = path.rstrip("/")
        if path in tree:
            data, changed = tree[path]
            return [self._file_item(path, data, changed)]

        files = sorted(p for p in tree if _is_under(p, path))
        if not files and path != "$":
            return []

        folders: dict[str, int] = {path: 0}
        items: list[RemoteItem] = []
        for file_path in files:
            data, changed = tree[file_path]
            relative = file_path[len(path) + 1:]
            if not recursive and "/" in relative:
                continue
            parts = relative.split("/")
            for depth in range(1, len(parts)):
                folder = path + "/" + "/".join(parts[:depth])
                folders[folder] = max(folders.get(folder, 0), changed)
            folders[path] = max(folders[path], changed)
            items.append(self._file_item(file_path, data, changed))

        items.extend(
            RemoteItem(path=folder, is_directory=True, changeset_id=changed)
            for folder, changed in folders.items()
        )
        return sorted(items, key=lambda item: item.path)

    @staticmethod
    def _file_item(path: str, data: bytes, changed: int) -> RemoteItem:
        return RemoteItem(
            path=path,
            content_id=content_hash(data),
            changeset_id=changed,
            encoding="utf-8",
            download_url=f"{path};C{changed}",
        )

    def download_file(self, item: RemoteItem) -> bytes:
        self.download_count += 1
        if item.path in self.failing_downloads:
            raise TransientRemoteError(
                "Download failed", path=item.path, changeset=item.changeset_id
            )
        if item.download_url in self._shelved_content:
            return self._shelved_content[item.download_url]
        record = self._tree_at(item.changeset_id).get(item.path)
        if record is None:
            raise RemoteError("Item not found", path=item.path)
        return record[0]

    def get_changeset(self, changeset_id: int) -> Changeset:
        try:
            return self._changesets[changeset_id]
        except KeyError:
            raise RemoteError(
                "Changeset not found", changeset=changeset_id
            ) from None

    def query_history(
        self,
        path: str,
        version_from: int | None = None,
        version_to: int | None = None,
        max_count: int | None = None,
        ascending: bool = False,
    ) -> list[Changeset]:
        low = version_from or 1
        high = version_to if version_to is not None else self.latest
        matches = [
            self._changesets[cs]
            for cs in sorted(self._changesets, reverse=not ascending)
            if low <= cs <= high
            and any(_is_under(p, path) for p in self._changed_paths[cs])
        ]
        if max_count is not None:
            matches = matches[:max_count]
        return matches

    def latest_changeset(self, path: str) -> int | None:
        history = self.query_history(path, max_count=1)
        return history[0].changeset_id if history else None

    # ------------------------------------------------------------------
    # Shelvesets
    # ------------------------------------------------------------------

    def add_shelveset(
        self,
        shelveset: Shelveset,
        changes: Sequence[PendingChange],
        contents: Mapping[str, bytes],
        replace: bool = False,
    ) -> Shelveset:
        """Store *changes* (server paths) under *shelveset*."""
        taken = [
            s for s, _ in self._shelvesets
            if s.matches(shelveset.name, shelveset.owner)
        ]
        if taken and not replace:
            raise ShelvesetExists(
                "Shelveset already exists",
                name=shelveset.name,
                owner=shelveset.owner,
            )
        self._shelvesets = [
            (s, c) for s, c in self._shelvesets
            if not s.matches(shelveset.name, shelveset.owner)
        ]

        shelved: list[ShelvedChange] = []
        for change in changes:
            item = None
            data = contents.get(change.path)
            if change.kind != ChangeKind.DELETE and data is not None:
                url = f"shelve:{shelveset.name};{shelveset.owner}:{change.path}"
                self._shelved_content[url] = data
                item = RemoteItem(
                    path=change.path,
                    content_id=content_hash(data),
                    encoding="utf-8",
                    download_url=url,
                )
            shelved.append(
                ShelvedChange(
                    kind=change.kind,
                    path=change.path,
                    source_path=(
                        change.source_path
                        if change.kind == ChangeKind.RENAME
                        else None
                    ),
                    item=item,
                )
            )
        self._shelvesets.append((shelveset, shelved))
        logger.debug(
            "Shelved %d changes as %s", len(shelved), shelveset.name
        )
        return shelveset

    def query_shelvesets(
        self, name: str | None = None, owner: str | None = None
    ) -> list[Shelveset]:
        return [
            s for s, _ in self._shelvesets
            if (name is None or s.name.lower() == name.lower())
            and (owner is None or s.owner.lower() == owner.lower())
        ]

    def _shelveset_index(self, shelveset: Shelveset) -> int:
        for index, (stored, _) in enumerate(self._shelvesets):
            if stored.matches(shelveset.name, shelveset.owner):
                return index
        raise RemoteError(
            "Shelveset not found", name=shelveset.name, owner=shelveset.owner
        )

    def get_shelveset_changes(self, shelveset: Shelveset) -> list[ShelvedChange]:
        return list(self._shelvesets[self._shelveset_index(shelveset)][1])

    def delete_shelveset(self, shelveset: Shelveset) -> None:
        del self._shelvesets[self._shelveset_index(shelveset)]


class InMemoryWorkspace:
    """Pending-change staging over an ``InMemoryVersionControlService``.

    Attributes:
        conflicts_to_raise: Number of upcoming ``check_in`` calls that fail
            with ``CheckinConflict``.
        require_policy_override: When True, ``check_in`` without a policy
            override fails with ``PolicyRejected``.
        on_check_in: Optional callback run at the start of ``check_in``
            (used to simulate a concurrent server change).
        checkins: ``(changeset, changes)`` for every successful checkin.
    """

    def __init__(
        self,
        service: InMemoryVersionControlService,
        owner: str = "DOMAIN\\bridge",
    ) -> None:
        self.service = service
        self.owner = owner
        self._pending: list[PendingChange] = []
        self._contents: dict[str, bytes] = {}
        self.encodings: dict[str, str] = {}
        self.locks: dict[str, LockLevel] = {}
        self.conflicts_to_raise = 0
        self.require_policy_override = False
        self.on_check_in = None
        self.checkins: list[tuple[int, list[PendingChange]]] = []
        self.authors: list[str | None] = []
        self.pend_calls = 0

    def _pend(
        self, change: PendingChange, lock_level: LockLevel
    ) -> None:
        self.pend_calls += 1
        self._pending.append(change)
        if lock_level != LockLevel.NONE:
            self.locks[change.path] = lock_level

    def pend_add(
        self,
        path: str,
        content: bytes,
        encoding: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        self._contents[path] = content
        self.encodings[path] = encoding
        self._pend(
            PendingChange(
                kind=ChangeKind.ADD,
                source_path=path,
                content_id=content_hash(content),
            ),
            lock_level,
        )

    def pend_edit(
        self,
        path: str,
        content: bytes,
        encoding: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        self._contents[path] = content
        self.encodings[path] = encoding
        self._pend(
            PendingChange(
                kind=ChangeKind.EDIT,
                source_path=path,
                content_id=content_hash(content),
            ),
            lock_level,
        )

    def pend_delete(
        self, path: str, lock_level: LockLevel = LockLevel.NONE
    ) -> None:
        self._pend(
            PendingChange(kind=ChangeKind.DELETE, source_path=path),
            lock_level,
        )

    def pend_rename(
        self,
        source_path: str,
        target_path: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        self._pend(
            PendingChange(
                kind=ChangeKind.RENAME,
                source_path=source_path,
                target_path=target_path,
            ),
            lock_level,
        )

    def check_in(
        self,
        changes: Sequence[PendingChange],
        author: RemoteIdentity | None,
        comment: str,
        work_items: Sequence[int] = (),
        policy_override: str | None = None,
    ) -> int:
        if self.on_check_in is not None:
            self.on_check_in()
        if self.conflicts_to_raise > 0:
            self.conflicts_to_raise -= 1
            raise CheckinConflict(
                "The item has been modified on the server",
                path=changes[0].path if changes else None,
            )
        if self.require_policy_override and not policy_override:
            raise PolicyRejected("Checkin policy not satisfied")

        owner = author.unique_name if author else self.owner
        changeset_id = self.service.apply(
            list(changes), self._contents, owner, comment
        )
        self.checkins.append((changeset_id, list(changes)))
        self.authors.append(author.unique_name if author else None)
        self._pending.clear()
        self._contents.clear()
        self.locks.clear()
        return changeset_id

    def shelve(
        self,
        name: str,
        comment: str,
        work_items: Sequence[int] = (),
        replace: bool = False,
    ) -> Shelveset:
        if not self._pending:
            raise RemoteError("No pending changes to shelve", name=name)
        shelveset = self.service.add_shelveset(
            Shelveset(
                name=name,
                owner=self.owner,
                comment=comment,
                created=datetime.now(timezone.utc),
            ),
            self._pending,
            self._contents,
            replace,
        )
        self._pending.clear()
        self._contents.clear()
        self.locks.clear()
        return shelveset

    def get_pending_changes(self) -> list[PendingChange]:
        return list(self._pending)

    def undo(self, paths: Sequence[str] | None = None) -> int:
        if paths is None:
            count = len(self._pending)
            self._pending.clear()
            self._contents.clear()
            self.locks.clear()
            return count
        wanted = set(paths)
        kept = [c for c in self._pending if c.path not in wanted]
        count = len(self._pending) - len(kept)
        self._pending = kept
        return count


class InMemoryIdentityService:
    """Identity lookup over a fixed identity table.

    ``calls`` records every ``(factor, values)`` request so tests can
    assert that lookups are coalesced.
    """

    def __init__(self, identities: Sequence[RemoteIdentity] = ()) -> None:
        self.identities = list(identities)
        self.calls: list[tuple[SearchFactor, tuple[str, ...]]] = []

    def _matches(
        self, identity: RemoteIdentity, factor: SearchFactor, value: str
    ) -> bool:
        needle = value.strip().lower()
        account = identity.unique_name.rsplit("\\", 1)[-1].lower()
        email = (identity.email or "").lower()
        display = identity.display_name.lower()
        if factor == SearchFactor.MAIL_ADDRESS:
            return email == needle
        if factor == SearchFactor.DISPLAY_NAME:
            return display == needle
        if factor == SearchFactor.ACCOUNT_NAME:
            return needle in (identity.unique_name.lower(), account)
        return needle in (
            identity.unique_name.lower(), account, email, display
        )

    def _lookup(self, factor: SearchFactor, value: str) -> list[RemoteIdentity]:
        return [i for i in self.identities if self._matches(i, factor, value)]

    def read_identity(
        self, factor: SearchFactor, value: str
    ) -> list[RemoteIdentity]:
        self.calls.append((factor, (value,)))
        return self._lookup(factor, value)

    def read_identities(
        self, factor: SearchFactor, values: Sequence[str]
    ) -> dict[str, list[RemoteIdentity]]:
        self.calls.append((factor, tuple(values)))
        return {value: self._lookup(factor, value) for value in values}


def blob_id(data: bytes) -> str:
    """Git blob id of *data*."""
    header = f"blob {len(data)}\0".encode()
    return hashlib.sha1(header + data).hexdigest()


class InMemoryObjectStore:
    """Content-addressed commits and blobs held in dictionaries."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._commits: dict[str, tuple[CommitInfo, TreeSnapshot]] = {}
        self.refs: dict[str, str] = {}
        self.tags: dict[str, str] = {}
        self.checkouts: list[tuple[str, str]] = []

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def commit_files(
        self,
        files: Mapping[str, bytes],
        message: str,
        author: LocalAuthor | None = None,
        parents: Sequence[str] | None = None,
    ) -> str:
        """Commit a full file table on top of HEAD and advance HEAD."""
        author = author or LocalAuthor(name="Dev", email="dev@example.com")
        snapshot = TreeSnapshot.from_entries(
            TreeEntry(path=path, content_id=self.write_blob(data))
            for path, data in files.items()
        )
        if parents is None:
            head = self.head()
            parents = [head] if head else []
        commit_id = self.create_commit(
            snapshot, parents, author, author, message
        )
        self.update_ref("HEAD", commit_id)
        return commit_id

    # ------------------------------------------------------------------
    # LocalObjectStore
    # ------------------------------------------------------------------

    def head(self) -> str | None:
        return self.refs.get("HEAD")

    def has_commit(self, commit_id: str) -> bool:
        return commit_id in self._commits

    def read_commit(self, commit_id: str) -> CommitInfo:
        try:
            return self._commits[commit_id][0]
        except KeyError:
            raise KeyError(f"Unknown commit {commit_id}") from None

    def read_snapshot(self, commit_id: str) -> TreeSnapshot:
        try:
            return self._commits[commit_id][1]
        except KeyError:
            raise KeyError(f"Unknown commit {commit_id}") from None

    def read_blob(self, content_id: str) -> bytes:
        return self._blobs[content_id]

    def write_blob(self, data: bytes) -> str:
        content_id = blob_id(data)
        self._blobs[content_id] = data
        return content_id

    def create_commit(
        self,
        snapshot: TreeSnapshot,
        parents: Sequence[str],
        author: LocalAuthor,
        committer: LocalAuthor,
        message: str,
        time: datetime | None = None,
    ) -> str:
        for entry in snapshot.entries:
            if not entry.is_directory and entry.content_id not in self._blobs:
                raise KeyError(f"Missing blob for {entry.path}")
        payload = json.dumps(
            {
                "tree": [e.model_dump() for e in snapshot.entries],
                "parents": list(parents),
                "author": str(author),
                "committer": str(committer),
                "message": message,
                "time": time.isoformat() if time else None,
                "seq": len(self._commits),
            },
            sort_keys=True,
        )
        commit_id = hashlib.sha1(payload.encode("utf-8")).hexdigest()
        info = CommitInfo(
            commit_id=commit_id,
            parents=tuple(parents),
            author=author,
            committer=committer,
            message=message,
            time=time,
        )
        self._commits[commit_id] = (info, snapshot)
        return commit_id

    def commits_between(self, since: str | None, until: str) -> list[str]:
        chain: list[str] = []
        current: str | None = until
        while current is not None and current != since:
            chain.append(current)
            parents = self.read_commit(current).parents
            current = parents[0] if parents else None
        chain.reverse()
        return chain

    def tag(self, name: str, commit_id: str, message: str = "") -> None:
        self.tags[name] = commit_id

    def update_ref(self, ref: str, commit_id: str) -> None:
        self.refs[ref] = commit_id

    def read_ref(self, ref: str) -> str | None:
        return self.refs.get(ref)

    def checkout(self, branch: str, commit_id: str) -> None:
        self.refs[f"refs/heads/{branch}"] = commit_id
        self.refs["HEAD"] = commit_id
        self.checkouts.append((branch, commit_id))
