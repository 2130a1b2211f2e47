from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from wiki_daemon.config import Config
from wiki_daemon.core.client import SYNC_TAG, WikiClient
from wiki_daemon.errors import NotFoundError, TransientIOError, WikiApiError


def _response(status=200, json_data=None, content=b"", content_type=""):
    response = Mock()
    response.status_code = status
    response.headers = {"Content-Type": content_type} if content_type else {}
    response.url = "https://wiki.example.com/applications/wiki/api/x"
    response.text = content.decode("utf-8", "replace")
    if json_data is not None:
        response.json.return_value = json_data
        response.content = content or b"{}"
    else:
        response.json.side_effect = ValueError("no json")
        response.content = content
    return response


# -------------------------------------------------------------------------
# Construction
# -------------------------------------------------------------------------


def test_api_url_construction(mock_config):
    """API root sits below the wiki base URL."""
    client = WikiClient(mock_config)
    assert client.api_url == "https://wiki.example.com/applications/wiki/api"


def test_api_url_strips_trailing_slash():
    config = Config(
        wiki_url="https://wiki.example.com/",
        username="user",
        password="pass",
    )
    client = WikiClient(config)
    assert client.api_url == "https://wiki.example.com/applications/wiki/api"


def test_session_creation_secure(mock_config):
    """Session carries basic auth and SSL verification."""
    client = WikiClient(mock_config)
    assert client.session.auth == ("testuser", "testpass")
    assert client.session.verify


def test_session_creation_insecure():
    config = Config(
        wiki_url="https://wiki.example.com",
        username="user",
        password="pass",
        insecure=True,
    )
    client = WikiClient(config)
    assert not client.session.verify


def test_session_is_reused_within_thread(mock_config):
    client = WikiClient(mock_config)
    assert client.session is client.session


# -------------------------------------------------------------------------
# Error mapping
# -------------------------------------------------------------------------


@patch("wiki_daemon.core.client.requests.Session.request")
def test_connection_error_is_transient(mock_request, mock_config):
    mock_request.side_effect = requests.ConnectionError("refused")
    client = WikiClient(mock_config)

    with pytest.raises(TransientIOError, match="refused"):
        client.get_spaces()


@patch("wiki_daemon.core.client.requests.Session.request")
def test_timeout_is_transient(mock_request, mock_config):
    mock_request.side_effect = requests.Timeout("slow")
    client = WikiClient(mock_config)

    with pytest.raises(TransientIOError):
        client.get_spaces()


@patch("wiki_daemon.core.client.requests.Session.request")
def test_other_request_exception_is_api_error(mock_request, mock_config):
    mock_request.side_effect = requests.exceptions.InvalidURL("bad url")
    client = WikiClient(mock_config)

    with pytest.raises(WikiApiError):
        client.get_spaces()


@patch("wiki_daemon.core.client.requests.Session.request")
def test_404_is_not_found(mock_request, mock_config):
    mock_request.return_value = _response(status=404)
    client = WikiClient(mock_config)

    with pytest.raises(NotFoundError):
        client.get_document_content("missing.md", "Shared")


@patch("wiki_daemon.core.client.requests.Session.request")
def test_5xx_is_transient(mock_request, mock_config):
    mock_request.return_value = _response(status=503)
    client = WikiClient(mock_config)

    with pytest.raises(TransientIOError, match="503"):
        client.get_spaces()


@patch("wiki_daemon.core.client.requests.Session.request")
def test_4xx_carries_status_code(mock_request, mock_config):
    mock_request.return_value = _response(status=403, content=b"forbidden")
    client = WikiClient(mock_config)

    with pytest.raises(WikiApiError) as exc_info:
        client.get_spaces()

    assert exc_info.value.status_code == 403
    assert not isinstance(exc_info.value, NotFoundError)


@patch("wiki_daemon.core.client.requests.Session.request")
def test_invalid_json_is_api_error(mock_request, mock_config):
    mock_request.return_value = _response(content=b"<html>")
    client = WikiClient(mock_config)

    with pytest.raises(WikiApiError, match="Invalid JSON"):
        client.get_spaces()


@patch("wiki_daemon.core.client.requests.Session.request")
def test_requests_use_timeout(mock_request, mock_config):
    mock_request.return_value = _response(json_data=[])
    client = WikiClient(mock_config)

    client.get_spaces()

    args, kwargs = mock_request.call_args
    assert args == (
        "GET",
        "https://wiki.example.com/applications/wiki/api/spaces",
    )
    assert kwargs["timeout"] == (10, 60)


# -------------------------------------------------------------------------
# Spaces
# -------------------------------------------------------------------------


@patch("wiki_daemon.core.client.requests.Session.request")
def test_get_space_name(mock_request, mock_config):
    mock_request.return_value = _response(
        json_data=[{"id": 1, "name": "Private"}, {"id": "2", "name": "Shared"}]
    )
    client = WikiClient(mock_config)

    assert client.get_space_name(2) == "Shared"


@patch("wiki_daemon.core.client.requests.Session.request")
def test_get_space_name_unknown(mock_request, mock_config):
    mock_request.return_value = _response(json_data=[{"id": 1, "name": "A"}])
    client = WikiClient(mock_config)

    with pytest.raises(NotFoundError, match="Space 9 not found"):
        client.get_space_name(9)


@patch("wiki_daemon.core.client.requests.Session.request")
def test_spaces_must_be_a_list(mock_request, mock_config):
    mock_request.return_value = _response(json_data={"spaces": []})
    client = WikiClient(mock_config)

    with pytest.raises(WikiApiError, match="list of spaces"):
        client.get_spaces()


@patch("wiki_daemon.core.client.requests.Session.request")
def test_validate_connection_counts_spaces(mock_request, mock_config):
    mock_request.return_value = _response(json_data=[{"id": 1}, {"id": 2}])
    client = WikiClient(mock_config)

    assert client.validate_connection() == 2


# -------------------------------------------------------------------------
# Documents
# -------------------------------------------------------------------------


@patch("wiki_daemon.core.client.requests.Session.request")
def test_list_documents(mock_request, mock_config):
    mock_request.return_value = _response(
        json_data=[
            {
                "title": "Guide",
                "filePath": "/docs/guide.md",
                "updatedAt": "2024-03-01T10:00:00Z",
            },
            {"title": "Release Notes"},
            {"title": "Logo", "path": "img/logo.png"},
            "garbage",
        ]
    )
    client = WikiClient(mock_config)

    documents = client.list_documents(2)

    assert mock_request.call_args[0][1].endswith("/spaces/2/documents")
    assert [d.remote_path for d in documents] == [
        "docs/guide.md",
        "release-notes.md",
        "img/logo.png",
    ]
    assert documents[0].updated_at == datetime(
        2024, 3, 1, 10, 0, tzinfo=timezone.utc
    )
    assert documents[1].updated_at is None
    assert documents[2].is_binary is True


@patch("wiki_daemon.core.client.requests.Session.request")
def test_list_documents_envelope(mock_request, mock_config):
    mock_request.return_value = _response(
        json_data={"documents": [{"title": "A", "path": "a.md"}]}
    )
    client = WikiClient(mock_config)

    assert [d.remote_path for d in client.list_documents(2)] == ["a.md"]


@patch("wiki_daemon.core.client.requests.Session.request")
def test_get_document_content_raw_bytes(mock_request, mock_config):
    mock_request.return_value = _response(
        content=b"\x89PNG", content_type="image/png"
    )
    client = WikiClient(mock_config)

    assert client.get_document_content("img/logo.png", "Shared") == b"\x89PNG"
    kwargs = mock_request.call_args[1]
    assert kwargs["params"] == {"path": "img/logo.png", "spaceName": "Shared"}


@patch("wiki_daemon.core.client.requests.Session.request")
def test_get_document_content_json_envelope(mock_request, mock_config):
    mock_request.return_value = _response(
        json_data={"content": "# Título"},
        content_type="application/json; charset=utf-8",
    )
    client = WikiClient(mock_config)

    content = client.get_document_content("a.md", "Shared")

    assert content == "# Título".encode("utf-8")


@patch("wiki_daemon.core.client.requests.Session.request")
def test_create_or_update_document_payload(mock_request, mock_config):
    mock_request.return_value = _response(json_data={"id": 5})
    client = WikiClient(mock_config)

    result = client.create_or_update_document("guide", "# Hi", 2, "docs/guide.md")

    assert result == {"id": 5}
    args, kwargs = mock_request.call_args
    assert args[0] == "POST"
    assert args[1].endswith("/documents")
    assert kwargs["json"] == {
        "title": "guide",
        "content": "# Hi",
        "spaceId": 2,
        "tags": [SYNC_TAG],
        "path": "docs/guide.md",
    }


@patch("wiki_daemon.core.client.requests.Session.request")
def test_upload_binary_multipart(mock_request, mock_config):
    mock_request.return_value = _response(json_data={"ok": True})
    client = WikiClient(mock_config)

    client.upload_binary(b"\x00\x01", "logo.png", 2, "img")

    args, kwargs = mock_request.call_args
    assert args[1].endswith("/documents/upload")
    assert kwargs["data"] == {"spaceId": "2", "folderPath": "img"}
    assert kwargs["files"] == {"file": ("logo.png", b"\x00\x01")}


@patch("wiki_daemon.core.client.requests.Session.request")
def test_upload_binary_root_folder_omits_folder_path(mock_request, mock_config):
    mock_request.return_value = _response(status=204)
    client = WikiClient(mock_config)

    assert client.upload_binary(b"x", "a.bin", 2) is None
    assert mock_request.call_args[1]["data"] == {"spaceId": "2"}


@patch("wiki_daemon.core.client.requests.Session.request")
def test_delete_document_quotes_path(mock_request, mock_config):
    mock_request.return_value = _response(status=204)
    client = WikiClient(mock_config)

    client.delete_document("docs/my notes.md", 2)

    args, kwargs = mock_request.call_args
    assert args[0] == "DELETE"
    assert args[1].endswith("/documents/docs%2Fmy%20notes.md")
    assert kwargs["json"] == {"spaceId": 2}


@patch("wiki_daemon.core.client.requests.Session.request")
def test_delete_document_missing(mock_request, mock_config):
    mock_request.return_value = _response(status=404)
    client = WikiClient(mock_config)

    with pytest.raises(NotFoundError):
        client.delete_document("gone.md", 2)
