import base64
from unittest.mock import Mock, patch

import pytest
import requests

from tf_bridge.bridge.models import (
    ChangeKind,
    RemoteIdentity,
    RemoteItem,
    SearchFactor,
    Shelveset,
)
from tf_bridge.config import Config
from tf_bridge.core.client import API_VERSION, TfsClient, TfsWorkspace, code_page
from tf_bridge.core.interfaces import LockLevel
from tf_bridge.errors import (
    CheckinConflict,
    PolicyRejected,
    RemoteError,
    TransientRemoteError,
)

SESSION_REQUEST = "tf_bridge.core.client.requests.Session.request"


def _response(status=200, json_data=None, content=b""):
    """Build a mock requests.Response."""
    response = Mock()
    response.status_code = status
    response.json.return_value = json_data if json_data is not None else {}
    response.content = content
    response.text = ""
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(
            f"{status} Client Error", response=response
        )
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def client(mock_config):
    return TfsClient(mock_config, retry_delay=0)


# TestTfsClient tests
def test_api_url_construction(mock_config):
    """Test that the REST API URL is built from the collection URL."""
    client = TfsClient(mock_config)
    assert client.api_url == "https://tfs.example.com/tfs/DefaultCollection/_apis"


def test_api_url_trailing_slash():
    config = Config(server_url="https://tfs.example.com/tfs/Coll/")
    assert TfsClient(config).api_url == "https://tfs.example.com/tfs/Coll/_apis"


def test_session_creation_secure(mock_config):
    """Test that session is created with correct auth and SSL verification."""
    client = TfsClient(mock_config)
    assert client.session.auth == ("CORP\\builder", "secret")
    assert client.session.verify


def test_session_creation_insecure():
    """Test that session is created with SSL verification disabled in insecure mode."""
    config = Config(server_url="https://tfs.example.com", insecure=True)
    client = TfsClient(config)
    assert not client.session.verify
    assert client.session.auth is None


@patch(SESSION_REQUEST)
def test_get_changeset(mock_request, client):
    """Test changeset records are parsed into Changeset models."""
    mock_request.return_value = _response(
        json_data={
            "changesetId": 12,
            "author": {"uniqueName": "CORP\\jane", "displayName": "Jane Doe"},
            "checkedInBy": {"uniqueName": "CORP\\build"},
            "comment": "Fix the build",
            "createdDate": "2026-01-02T03:04:05.123Z",
        }
    )

    changeset = client.get_changeset(12)

    assert changeset.changeset_id == 12
    assert changeset.owner == "CORP\\jane"
    assert changeset.owner_display_name == "Jane Doe"
    assert changeset.committer == "CORP\\build"
    assert changeset.comment == "Fix the build"
    assert changeset.created.year == 2026
    args, kwargs = mock_request.call_args
    assert args == (
        "GET",
        "https://tfs.example.com/tfs/DefaultCollection/_apis/tfvc/changesets/12",
    )
    assert kwargs["params"]["api-version"] == API_VERSION


@patch(SESSION_REQUEST)
def test_query_history_params(mock_request, client):
    mock_request.return_value = _response(
        json_data={"value": [{"changesetId": 3}, {"changesetId": 4}]}
    )

    history = client.query_history(
        "$/Project/Main", version_from=3, version_to=9, max_count=5, ascending=True
    )

    assert [c.changeset_id for c in history] == [3, 4]
    params = mock_request.call_args.kwargs["params"]
    assert params["searchCriteria.itemPath"] == "$/Project/Main"
    assert params["searchCriteria.fromId"] == 3
    assert params["searchCriteria.toId"] == 9
    assert params["$top"] == 5
    assert params["$orderby"] == "id asc"


@patch(SESSION_REQUEST)
def test_latest_changeset_empty_history(mock_request, client):
    mock_request.return_value = _response(json_data={"value": []})
    assert client.latest_changeset("$/Project/Main") is None


@patch(SESSION_REQUEST)
def test_get_items(mock_request, client):
    mock_request.return_value = _response(
        json_data={
            "value": [
                {"path": "$/Project/Main", "isFolder": True, "version": 8},
                {
                    "path": "$/Project/Main/a.txt",
                    "version": 7,
                    "hashValue": "abc==",
                    "encoding": 65001,
                    "url": "https://tfs.example.com/item",
                },
                {"path": "$/Project/Main/b.bin", "version": 8, "encoding": -1},
            ]
        }
    )

    items = client.get_items("$/Project/Main", version=8)

    assert items[0].is_directory
    assert items[0].content_id is None
    assert items[1].encoding == "utf-8"
    assert items[1].changeset_id == 7
    assert items[1].content_id == "abc=="
    assert items[2].encoding == "binary"
    params = mock_request.call_args.kwargs["params"]
    assert params["recursionLevel"] == "Full"
    assert params["versionDescriptor.version"] == "8"


def test_get_items_invalid_path(client):
    with pytest.raises(ValueError, match="must start with"):
        client.get_items("Project/Main")


@patch(SESSION_REQUEST)
def test_get_items_missing_path(mock_request, client):
    mock_request.return_value = _response(404)
    assert client.get_items("$/Project/Missing") == []


@patch(SESSION_REQUEST)
def test_get_item_missing(mock_request, client):
    mock_request.return_value = _response(404)
    assert client.get_item("$/Project/Main/nope.txt") is None


@patch(SESSION_REQUEST)
def test_download_file(mock_request, client):
    mock_request.return_value = _response(content=b"payload")
    item = RemoteItem(path="$/Project/Main/a.txt", changeset_id=7)

    assert client.download_file(item) == b"payload"
    kwargs = mock_request.call_args.kwargs
    assert kwargs["headers"] == {"Accept": "application/octet-stream"}
    assert kwargs["params"]["download"] == "true"
    assert kwargs["params"]["versionDescriptor.version"] == "7"


# Retry behaviour
@patch(SESSION_REQUEST)
def test_server_error_retried(mock_request, client):
    mock_request.side_effect = [
        _response(503),
        _response(json_data={"value": []}),
    ]
    assert client.query_history("$/Project/Main") == []
    assert mock_request.call_count == 2


@patch(SESSION_REQUEST)
def test_connection_error_retried(mock_request, client):
    mock_request.side_effect = [
        requests.ConnectionError("reset"),
        _response(json_data={"value": []}),
    ]
    assert client.query_history("$/Project/Main") == []


@patch(SESSION_REQUEST)
def test_retries_exhausted(mock_request, client):
    mock_request.return_value = _response(500)

    with pytest.raises(TransientRemoteError) as exc_info:
        client.get_changeset(1)

    # max_retries=2 -> three attempts
    assert mock_request.call_count == 3
    assert exc_info.value.context["status"] == 500


@patch(SESSION_REQUEST)
def test_client_error_not_retried(mock_request, client):
    mock_request.return_value = _response(400)

    with pytest.raises(RemoteError) as exc_info:
        client.get_changeset(1)

    assert not isinstance(exc_info.value, TransientRemoteError)
    assert exc_info.value.context["status"] == 400
    assert mock_request.call_count == 1


# Identities
@patch(SESSION_REQUEST)
def test_read_identity(mock_request, client):
    mock_request.return_value = _response(
        json_data={
            "value": [
                {
                    "providerDisplayName": "Jane Doe",
                    "properties": {
                        "Account": {"$value": "jane"},
                        "Domain": {"$value": "CORP"},
                        "Mail": {"$value": "jane@example.com"},
                    },
                },
                {"providerDisplayName": "No account", "properties": {}},
            ]
        }
    )

    identities = client.read_identity(SearchFactor.MAIL_ADDRESS, "jane@example.com")

    assert identities == [
        RemoteIdentity(
            unique_name="CORP\\jane",
            display_name="Jane Doe",
            email="jane@example.com",
        )
    ]
    params = mock_request.call_args.kwargs["params"]
    assert params["searchFilter"] == "MailAddress"
    assert params["filterValue"] == "jane@example.com"


@patch(SESSION_REQUEST)
def test_read_identities_one_call_per_value(mock_request, client):
    mock_request.return_value = _response(json_data={"value": []})
    result = client.read_identities(SearchFactor.GENERAL, ["a", "b"])
    assert result == {"a": [], "b": []}
    assert mock_request.call_count == 2


@patch(SESSION_REQUEST)
def test_validate_connection(mock_request, client, mock_config):
    mock_request.return_value = _response(json_data={"value": []})
    assert client.validate_connection() == mock_config.server_url


def test_code_page():
    assert code_page("utf-8") == 65001
    assert code_page("UTF-16-LE") == 1200
    assert code_page("binary") == -1
    assert code_page("klingon") == -1


# TestTfsWorkspace tests
@patch(SESSION_REQUEST)
def test_check_in_posts_changeset(mock_request, client):
    mock_request.return_value = _response(json_data={"changesetId": 42})
    workspace = TfsWorkspace(client)
    workspace.pend_add("$/Project/Main/a.txt", b"hello", "utf-8", LockLevel.CHECKIN)

    changeset = workspace.check_in(
        workspace.get_pending_changes(),
        RemoteIdentity(unique_name="CORP\\jane"),
        "Add a",
        work_items=[17],
        policy_override="urgent",
    )

    assert changeset == 42
    assert workspace.get_pending_changes() == []
    args, kwargs = mock_request.call_args
    assert args[0] == "POST"
    body = kwargs["json"]
    assert body["comment"] == "Add a"
    assert body["author"] == {"uniqueName": "CORP\\jane"}
    assert body["workItems"] == [{"id": 17}]
    assert body["policyOverride"] == {"comment": "urgent"}
    change = body["changes"][0]
    assert change["changeType"] == "add"
    assert change["item"]["contentMetadata"] == {"encoding": 65001}
    assert base64.b64decode(change["newContent"]["content"]) == b"hello"


@patch(SESSION_REQUEST)
def test_pend_edit_uses_server_version(mock_request, client):
    mock_request.return_value = _response(
        json_data={"path": "$/Project/Main/a.txt", "version": 7}
    )
    workspace = TfsWorkspace(client)

    workspace.pend_edit("$/Project/Main/a.txt", b"new", "utf-8")
    workspace.pend_rename("$/Project/Main/a.txt", "$/Project/Main/b.txt")

    pending = workspace.get_pending_changes()
    assert [c.kind for c in pending] == [ChangeKind.EDIT, ChangeKind.RENAME]
    assert workspace._payload[0]["item"]["version"] == 7
    assert workspace._payload[1]["sourceServerItem"] == "$/Project/Main/a.txt"


@patch(SESSION_REQUEST)
def test_pend_delete_missing_item(mock_request, client):
    mock_request.return_value = _response(404)
    workspace = TfsWorkspace(client)
    with pytest.raises(RemoteError, match="Item not found"):
        workspace.pend_delete("$/Project/Main/gone.txt")


@patch(SESSION_REQUEST)
def test_check_in_conflict(mock_request, client):
    mock_request.return_value = _response(
        409, json_data={"typeKey": "ItemConflict", "message": "changed"}
    )
    workspace = TfsWorkspace(client)
    workspace.pend_add("$/Project/Main/a.txt", b"x", "utf-8")

    with pytest.raises(CheckinConflict, match="ItemConflict"):
        workspace.check_in(workspace.get_pending_changes(), None, "c")
    # Staged changes survive so the caller decides whether to undo
    assert len(workspace.get_pending_changes()) == 1


@patch(SESSION_REQUEST)
def test_check_in_policy_failure(mock_request, client):
    mock_request.return_value = _response(
        400,
        json_data={
            "typeKey": "CheckinPolicyException",
            "message": "Work items must be associated",
        },
    )
    workspace = TfsWorkspace(client)
    workspace.pend_add("$/Project/Main/a.txt", b"x", "utf-8")

    with pytest.raises(PolicyRejected):
        workspace.check_in(workspace.get_pending_changes(), None, "c")


@patch(SESSION_REQUEST)
def test_check_in_other_error_propagates(mock_request, client):
    mock_request.return_value = _response(
        400, json_data={"typeKey": "InvalidRequest", "message": "bad"}
    )
    workspace = TfsWorkspace(client)
    workspace.pend_add("$/Project/Main/a.txt", b"x", "utf-8")

    with pytest.raises(RemoteError) as exc_info:
        workspace.check_in(workspace.get_pending_changes(), None, "c")
    assert type(exc_info.value) is RemoteError


def test_undo_selected_paths(client):
    workspace = TfsWorkspace(client)
    workspace.pend_add("$/P/a.txt", b"a", "utf-8")
    workspace.pend_add("$/P/b.txt", b"b", "utf-8")

    assert workspace.undo(["$/P/a.txt"]) == 1
    assert [c.path for c in workspace.get_pending_changes()] == ["$/P/b.txt"]
    assert len(workspace._payload) == 1


# Shelvesets
@patch(SESSION_REQUEST)
def test_query_shelvesets(mock_request, client):
    mock_request.return_value = _response(
        json_data={
            "value": [
                {
                    "name": "wip",
                    "owner": {
                        "uniqueName": "CORP\\jane",
                        "displayName": "Jane Doe",
                    },
                    "comment": "Half done",
                    "createdDate": "2026-02-03T04:05:06Z",
                }
            ]
        }
    )

    shelvesets = client.query_shelvesets(name="wip", owner="CORP\\jane")

    assert [(s.name, s.owner, s.owner_display_name) for s in shelvesets] == [
        ("wip", "CORP\\jane", "Jane Doe")
    ]
    assert shelvesets[0].comment == "Half done"
    params = mock_request.call_args.kwargs["params"]
    assert params["requestData.name"] == "wip"
    assert params["requestData.owner"] == "CORP\\jane"


@patch(SESSION_REQUEST)
def test_get_shelveset_changes(mock_request, client):
    mock_request.return_value = _response(
        json_data={
            "value": [
                {"changeType": "add, edit, encoding",
                 "item": {"path": "$/P/new.txt", "hashValue": "h1"}},
                {"changeType": "edit", "item": {"path": "$/P/old.txt"}},
                {"changeType": "delete", "item": {"path": "$/P/gone.txt"}},
                {"changeType": "rename", "sourceServerItem": "$/P/a.txt",
                 "item": {"path": "$/P/b.txt"}},
                {"changeType": "rename, edit", "sourceServerItem": "$/P/c.txt",
                 "item": {"path": "$/P/d.txt"}},
            ]
        }
    )
    shelveset = Shelveset(name="wip", owner="CORP\\jane")

    changes = client.get_shelveset_changes(shelveset)

    assert [(c.kind, c.path) for c in changes] == [
        (ChangeKind.ADD, "$/P/new.txt"),
        (ChangeKind.EDIT, "$/P/old.txt"),
        (ChangeKind.DELETE, "$/P/gone.txt"),
        (ChangeKind.RENAME, "$/P/b.txt"),
        (ChangeKind.RENAME, "$/P/d.txt"),
    ]
    assert changes[2].item is None
    assert changes[3].source_path == "$/P/a.txt"
    assert changes[3].item is None
    assert changes[4].item.download_url == "shelveset:wip;CORP\\jane"
    params = mock_request.call_args.kwargs["params"]
    assert params["shelvesetId"] == "wip;CORP\\jane"


@patch(SESSION_REQUEST)
def test_download_shelved_item(mock_request, client):
    mock_request.return_value = _response(content=b"parked")
    item = RemoteItem(path="$/P/new.txt", download_url="shelveset:wip;CORP\\jane")

    assert client.download_file(item) == b"parked"
    params = mock_request.call_args.kwargs["params"]
    assert params["versionDescriptor.version"] == "wip;CORP\\jane"
    assert params["versionDescriptor.versionType"] == "shelveset"


def test_shelveset_writes_unsupported(client):
    workspace = TfsWorkspace(client)
    workspace.pend_add("$/P/a.txt", b"a", "utf-8")

    with pytest.raises(RemoteError, match="not supported"):
        workspace.shelve("wip", "comment")
    with pytest.raises(RemoteError, match="not supported"):
        client.delete_shelveset(Shelveset(name="wip", owner="CORP\\jane"))
    # Still staged, so the caller can undo
    assert len(workspace.get_pending_changes()) == 1
