import base64
import logging
import threading
import time
from datetime import datetime
from typing import Any, Mapping, Sequence

import requests

from ..bridge.models import (
    ChangeKind,
    Changeset,
    PendingChange,
    RemoteIdentity,
    RemoteItem,
    SearchFactor,
    ShelvedChange,
    Shelveset,
)
from ..config import Config
from ..errors import (
    CheckinConflict,
    PolicyRejected,
    RemoteError,
    TransientRemoteError,
)
from ..file_handler import BINARY_ENCODING
from ..validators import validate_server_path
from .interfaces import LockLevel

logger = logging.getLogger(__name__)

API_VERSION = "5.0"

# Python codec name <-> TFS code page
_CODE_PAGES = {
    "utf-8": 65001,
    "utf-16": 1200,
    "utf-16-le": 1200,
    "utf-16-be": 1201,
    "utf-32": 12000,
    "ascii": 20127,
    "cp1252": 1252,
    "windows-1252": 1252,
    "iso-8859-1": 28591,
    "iso8859-1": 28591,
    "latin-1": 28591,
    BINARY_ENCODING: -1,
}
_ENCODING_NAMES = {
    65001: "utf-8",
    1200: "utf-16-le",
    1201: "utf-16-be",
    12000: "utf-32",
    20127: "ascii",
    1252: "cp1252",
    28591: "iso-8859-1",
    -1: BINARY_ENCODING,
}

# download_url prefix of items read from a shelveset
_SHELVED = "shelveset:"

_SEARCH_FILTERS = {
    SearchFactor.GENERAL: "General",
    SearchFactor.ACCOUNT_NAME: "AccountName",
    SearchFactor.DISPLAY_NAME: "DisplayName",
    SearchFactor.MAIL_ADDRESS: "MailAddress",
}


def code_page(encoding: str) -> int:
    """TFS code page for a Python codec name (unknown names upload as binary)."""
    page = _CODE_PAGES.get(encoding.lower())
    if page is None:
        logger.debug("No code page for encoding %s, sending as binary", encoding)
        return -1
    return page


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _property(record: Mapping[str, Any], name: str) -> str:
    value = (record.get("properties") or {}).get(name) or {}
    return str(value.get("$value") or "")


class TfsClient:
    """TFVC REST client implementing the version control and identity services.

    Each thread gets its own ``requests.Session`` so concurrent downloads do
    not share connection state. Connection errors, timeouts and 5xx
    responses are retried ``config.max_retries`` times.
    """

    def __init__(self, config: Config, retry_delay: float = 0.5):
        self.config = config
        self.retry_delay = retry_delay
        self._thread_local = threading.local()
        self.api_url = f"{config.server_url.rstrip('/')}/_apis"

    @property
    def session(self) -> requests.Session:
        """Current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        if self.config.username or self.config.password:
            session.auth = (self.config.username, self.config.password)
        session.verify = not self.config.insecure
        session.headers["Accept"] = "application/json"
        return session

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        allow_missing: bool = False,
        **kwargs: Any,
    ) -> requests.Response | None:
        """Send a request, retrying transient failures.

        Returns:
            The response, or ``None`` for a 404 when *allow_missing* is set.

        Raises:
            TransientRemoteError: Retries exhausted on network errors or 5xx.
            RemoteError: Any other HTTP error.
        """
        url = f"{self.api_url}/{endpoint}"
        query = {"api-version": API_VERSION, **(params or {})}
        attempts = self.config.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._get_session().request(
                    method, url, params=query, timeout=(10, 60), **kwargs
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt == attempts:
                    raise TransientRemoteError(
                        f"Request failed after {attempts} attempts: {e}",
                        url=url,
                    ) from e
                logger.warning(
                    "%s %s failed (attempt %d/%d): %s",
                    method,
                    endpoint,
                    attempt,
                    attempts,
                    e,
                )
                time.sleep(self.retry_delay * attempt)
                continue

            if response.status_code >= 500:
                if attempt == attempts:
                    raise TransientRemoteError(
                        f"Server error {response.status_code} after "
                        f"{attempts} attempts",
                        url=url,
                        status=response.status_code,
                    )
                logger.warning(
                    "%s %s returned %d (attempt %d/%d)",
                    method,
                    endpoint,
                    response.status_code,
                    attempt,
                    attempts,
                )
                time.sleep(self.retry_delay * attempt)
                continue

            if response.status_code == 404 and allow_missing:
                return None
            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                raise RemoteError(
                    f"{method} {endpoint} failed: {e}",
                    url=url,
                    status=response.status_code,
                ) from e
            return response

    def _get_json(self, endpoint: str, **params: Any) -> Any:
        response = self._request("GET", endpoint, params=params)
        return response.json()

    # ------------------------------------------------------------------
    # RemoteVersionControlService
    # ------------------------------------------------------------------

    def _item(self, record: Mapping[str, Any]) -> RemoteItem:
        is_folder = bool(record.get("isFolder"))
        encoding = None
        if not is_folder and record.get("encoding") is not None:
            page = int(record["encoding"])
            encoding = _ENCODING_NAMES.get(page, str(page))
        return RemoteItem(
            path=record["path"],
            content_id=None if is_folder else record.get("hashValue"),
            is_directory=is_folder,
            changeset_id=int(record.get("version") or 0),
            encoding=encoding,
            download_url=record.get("url"),
        )

    @staticmethod
    def _version_params(version: int | None) -> dict[str, Any]:
        if version is None:
            return {}
        return {
            "versionDescriptor.version": str(version),
            "versionDescriptor.versionType": "changeset",
        }

    def get_item(self, path: str, version: int | None = None) -> RemoteItem | None:
        """Get a single item, or ``None`` when it does not exist."""
        response = self._request(
            "GET",
            "tfvc/items",
            params={"path": path, **self._version_params(version)},
            allow_missing=True,
        )
        if response is None:
            return None
        return self._item(response.json())

    def get_items(
        self, path: str, version: int | None = None, recursive: bool = True
    ) -> list[RemoteItem]:
        """List items below *path* (including *path* itself)."""
        valid, message = validate_server_path(path)
        if not valid:
            raise ValueError(message)
        response = self._request(
            "GET",
            "tfvc/items",
            params={
                "scopePath": path,
                "recursionLevel": "Full" if recursive else "OneLevel",
                **self._version_params(version),
            },
            allow_missing=True,
        )
        if response is None:
            return []
        return [self._item(r) for r in response.json().get("value", [])]

    def download_file(self, item: RemoteItem) -> bytes:
        """Download an item's content at the version it was listed at."""
        if item.download_url and item.download_url.startswith(_SHELVED):
            version = {
                "versionDescriptor.version": item.download_url[len(_SHELVED):],
                "versionDescriptor.versionType": "shelveset",
            }
        else:
            version = self._version_params(item.changeset_id or None)
        response = self._request(
            "GET",
            "tfvc/items",
            params={"path": item.path, "download": "true", **version},
            headers={"Accept": "application/octet-stream"},
        )
        return response.content

    def _changeset(self, record: Mapping[str, Any]) -> Changeset:
        author = record.get("author") or {}
        checked_in_by = record.get("checkedInBy") or author
        return Changeset(
            changeset_id=int(record["changesetId"]),
            owner=author.get("uniqueName", ""),
            owner_display_name=author.get("displayName", ""),
            committer=checked_in_by.get("uniqueName", ""),
            committer_display_name=checked_in_by.get("displayName", ""),
            comment=record.get("comment", ""),
            created=_parse_date(record.get("createdDate")),
        )

    def get_changeset(self, changeset_id: int) -> Changeset:
        return self._changeset(self._get_json(f"tfvc/changesets/{changeset_id}"))

    def query_history(
        self,
        path: str,
        version_from: int | None = None,
        version_to: int | None = None,
        max_count: int | None = None,
        ascending: bool = False,
    ) -> list[Changeset]:
        """Changesets touching *path*, newest first unless *ascending*."""
        params: dict[str, Any] = {
            "searchCriteria.itemPath": path,
            "$orderby": "id asc" if ascending else "id desc",
        }
        if version_from is not None:
            params["searchCriteria.fromId"] = version_from
        if version_to is not None:
            params["searchCriteria.toId"] = version_to
        if max_count is not None:
            params["$top"] = max_count
        data = self._get_json("tfvc/changesets", **params)
        return [self._changeset(r) for r in data.get("value", [])]

    def latest_changeset(self, path: str) -> int | None:
        history = self.query_history(path, max_count=1)
        return history[0].changeset_id if history else None

    # ------------------------------------------------------------------
    # Shelvesets
    # ------------------------------------------------------------------

    @staticmethod
    def _shelveset(record: Mapping[str, Any]) -> Shelveset:
        owner = record.get("owner") or {}
        return Shelveset(
            name=record["name"],
            owner=owner.get("uniqueName", ""),
            owner_display_name=owner.get("displayName", ""),
            comment=record.get("comment", ""),
            created=_parse_date(record.get("createdDate")),
        )

    def query_shelvesets(
        self, name: str | None = None, owner: str | None = None
    ) -> list[Shelveset]:
        params: dict[str, Any] = {"requestData.includeDetails": "true"}
        if name is not None:
            params["requestData.name"] = name
        if owner is not None:
            params["requestData.owner"] = owner
        data = self._get_json("tfvc/shelvesets", **params)
        return [self._shelveset(r) for r in data.get("value", [])]

    def _shelved_change(
        self, record: Mapping[str, Any], shelveset_id: str
    ) -> ShelvedChange:
        # changeType is a flag list such as "add, edit, encoding"
        flags = {f.strip() for f in str(record.get("changeType", "")).split(",")}
        item = self._item(record["item"])
        if "delete" in flags:
            kind = ChangeKind.DELETE
        elif "rename" in flags:
            kind = ChangeKind.RENAME
        elif "add" in flags:
            kind = ChangeKind.ADD
        else:
            kind = ChangeKind.EDIT

        shelved = None
        if kind != ChangeKind.DELETE and not item.is_directory and (
            kind != ChangeKind.RENAME or "edit" in flags
        ):
            shelved = item.model_copy(
                update={"download_url": f"{_SHELVED}{shelveset_id}"}
            )
        return ShelvedChange(
            kind=kind,
            path=item.path,
            source_path=(
                record.get("sourceServerItem")
                if kind == ChangeKind.RENAME
                else None
            ),
            item=shelved,
        )

    def get_shelveset_changes(self, shelveset: Shelveset) -> list[ShelvedChange]:
        shelveset_id = f"{shelveset.name};{shelveset.owner}"
        data = self._get_json("tfvc/shelvesets/changes", shelvesetId=shelveset_id)
        return [
            self._shelved_change(r, shelveset_id) for r in data.get("value", [])
        ]

    def delete_shelveset(self, shelveset: Shelveset) -> None:
        """Shelvesets are read-only in the TFVC REST API."""
        raise RemoteError(
            "Deleting shelvesets is not supported by the TFVC REST API",
            name=shelveset.name,
            owner=shelveset.owner,
        )

    # ------------------------------------------------------------------
    # RemoteIdentityService
    # ------------------------------------------------------------------

    def read_identity(
        self, factor: SearchFactor, value: str
    ) -> list[RemoteIdentity]:
        data = self._get_json(
            "identities",
            searchFilter=_SEARCH_FILTERS[factor],
            filterValue=value,
            queryMembership="None",
        )
        identities = []
        for record in data.get("value", []):
            account = _property(record, "Account")
            domain = _property(record, "Domain")
            if not account:
                continue
            unique_name = (
                account
                if "@" in account or not domain
                else f"{domain}\\{account}"
            )
            identities.append(
                RemoteIdentity(
                    unique_name=unique_name,
                    display_name=record.get("providerDisplayName", ""),
                    email=_property(record, "Mail") or None,
                )
            )
        return identities

    def read_identities(
        self, factor: SearchFactor, values: Sequence[str]
    ) -> dict[str, list[RemoteIdentity]]:
        """Look up several values; the REST API takes one filter value per call."""
        return {value: self.read_identity(factor, value) for value in values}

    def validate_connection(self) -> str:
        """Check that the collection is reachable and return its URL."""
        self._get_json("projects", **{"$top": 1})
        return self.config.server_url


class TfsWorkspace:
    """Server-side workspace: stages pending changes and creates changesets.

    Changes are held locally until ``check_in`` posts them as one
    changeset, so an ``undo`` never needs a server round trip.
    """

    def __init__(self, client: TfsClient):
        self.client = client
        self._pending: list[PendingChange] = []
        self._payload: list[dict[str, Any]] = []

    def _version_of(self, path: str) -> int:
        item = self.client.get_item(path)
        if item is None:
            raise RemoteError("Item not found", path=path)
        return item.changeset_id

    def _pend(
        self,
        change: PendingChange,
        payload: dict[str, Any],
        lock_level: LockLevel,
    ) -> None:
        if lock_level != LockLevel.NONE:
            # TFVC REST changesets are atomic; no explicit lock is taken
            logger.debug("Lock %s requested for %s", lock_level.value, change.path)
        self._pending.append(change)
        self._payload.append(payload)

    @staticmethod
    def _content(
        path: str, content: bytes, encoding: str, version: int | None
    ) -> dict[str, Any]:
        item: dict[str, Any] = {
            "path": path,
            "contentMetadata": {"encoding": code_page(encoding)},
        }
        if version is not None:
            item["version"] = version
        return {
            "item": item,
            "newContent": {
                "content": base64.b64encode(content).decode("ascii"),
                "contentType": "base64encoded",
            },
        }

    def pend_add(
        self,
        path: str,
        content: bytes,
        encoding: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        self._pend(
            PendingChange(kind=ChangeKind.ADD, source_path=path),
            {"changeType": "add", **self._content(path, content, encoding, None)},
            lock_level,
        )

    def pend_edit(
        self,
        path: str,
        content: bytes,
        encoding: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        version = self._version_of(path)
        self._pend(
            PendingChange(kind=ChangeKind.EDIT, source_path=path),
            {"changeType": "edit", **self._content(path, content, encoding, version)},
            lock_level,
        )

    def pend_delete(
        self, path: str, lock_level: LockLevel = LockLevel.NONE
    ) -> None:
        version = self._version_of(path)
        self._pend(
            PendingChange(kind=ChangeKind.DELETE, source_path=path),
            {"changeType": "delete", "item": {"path": path, "version": version}},
            lock_level,
        )

    def pend_rename(
        self,
        source_path: str,
        target_path: str,
        lock_level: LockLevel = LockLevel.NONE,
    ) -> None:
        version = self._version_of(source_path)
        self._pend(
            PendingChange(
                kind=ChangeKind.RENAME,
                source_path=source_path,
                target_path=target_path,
            ),
            {
                "changeType": "rename",
                "sourceServerItem": source_path,
                "item": {"path": target_path, "version": version},
            },
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
        """Post the staged changes as one changeset.

        Raises:
            CheckinConflict: An item changed on the server (HTTP 409).
            PolicyRejected: A checkin policy failed and was not overridden.
        """
        wanted = {(c.kind, c.source_path, c.target_path) for c in changes}
        payload = [
            p
            for c, p in zip(self._pending, self._payload)
            if (c.kind, c.source_path, c.target_path) in wanted
        ]
        body: dict[str, Any] = {"comment": comment, "changes": payload}
        if author is not None:
            body["author"] = {"uniqueName": author.unique_name}
        if work_items:
            body["workItems"] = [{"id": w} for w in work_items]
        if policy_override:
            body["policyOverride"] = {"comment": policy_override}

        try:
            response = self.client._request("POST", "tfvc/changesets", json=body)
        except RemoteError as e:
            status = e.context.get("status")
            detail = self._error_detail(e)
            if status == 409:
                raise CheckinConflict(
                    f"Checkin conflict: {detail}", url=e.context.get("url")
                ) from e
            if "policy" in detail.lower():
                raise PolicyRejected(
                    f"Checkin policy failed: {detail}", url=e.context.get("url")
                ) from e
            raise
        changeset_id = int(response.json()["changesetId"])
        logger.info("Created changeset %d (%d changes)", changeset_id, len(payload))
        self.undo()
        return changeset_id

    @staticmethod
    def _error_detail(error: RemoteError) -> str:
        cause = error.__cause__
        response = getattr(cause, "response", None)
        if response is None:
            return str(error)
        try:
            data = response.json()
        except ValueError:
            return response.text or str(error)
        return f"{data.get('typeKey', '')}: {data.get('message', '')}"

    def shelve(
        self,
        name: str,
        comment: str,
        work_items: Sequence[int] = (),
        replace: bool = False,
    ) -> Shelveset:
        """Shelvesets are read-only in the TFVC REST API.

        The staged changes are kept so the caller can undo them.
        """
        raise RemoteError(
            "Creating shelvesets is not supported by the TFVC REST API",
            name=name,
            changes=len(self._pending),
        )

    def get_pending_changes(self) -> list[PendingChange]:
        return list(self._pending)

    def undo(self, paths: Sequence[str] | None = None) -> int:
        if paths is None:
            count = len(self._pending)
            self._pending.clear()
            self._payload.clear()
            return count
        wanted = set(paths)
        kept = [
            (c, p)
            for c, p in zip(self._pending, self._payload)
            if c.path not in wanted
        ]
        count = len(self._pending) - len(kept)
        self._pending = [c for c, _ in kept]
        self._payload = [p for _, p in kept]
        return count
