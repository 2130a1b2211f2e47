"""Shared pytest fixtures for wiki-daemon tests."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any
from unittest.mock import MagicMock

import pytest

import wiki_daemon.core.async_utils as async_utils
from wiki_daemon.config import Config
from wiki_daemon.errors import NotFoundError, TransientIOError
from wiki_daemon.sync.models import RemoteDocument

_ENV_KEYS = (
    "WIKI_URL",
    "WIKI_USERNAME",
    "WIKI_PASSWORD",
    "WATCH_FOLDER",
    "SHARED_SPACE_ID",
    "SYNC_INTERVAL",
    "WIKI_STATE_FILE",
    "WIKI_INSECURE",
    "WIKI_DEBUG",
    "WIKI_MAX_PARALLEL_REQUESTS",
    "WIKI_DEBOUNCE_MS",
    "WIKI_IGNORE_TTL_MS",
    "WIKI_CONFLICT_STRATEGY",
    "WIKI_DAEMON_CONFIG",
    "LOG_LEVEL",
    "LOG_FILE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer environment variables out of config resolution."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def reset_semaphore():
    """A semaphore is bound to the loop of the test that created it."""
    original = async_utils._semaphore
    async_utils._semaphore = None
    yield
    async_utils._semaphore = original


@pytest.fixture
def mock_config(tmp_path):
    """Create a Config instance pointing into a temp directory."""
    return Config(
        wiki_url="https://wiki.example.com",
        username="testuser",
        password="testpass",
        watch_folder=str(tmp_path / "watch"),
        space_id=2,
        state_file=str(tmp_path / ".wiki_daemon" / "state.json"),
        insecure=False,
    )


@pytest.fixture
def mock_wiki_client(mock_config):
    """Create a mock WikiClient instance for testing."""
    from wiki_daemon.core.client import WikiClient

    client = MagicMock(spec=WikiClient)
    client.config = mock_config
    return client


class FakeWikiClient:
    """Minimal WikiClient replacement backed by an in-memory space.

    Records every call in ``calls`` as ``(method, *args)`` tuples.
    """

    def __init__(self, space_id: int = 2, space_name: str = "Shared") -> None:
        self.space_id = space_id
        self.space_name = space_name
        self.documents: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple] = []
        self.fail_listing = False

    # --- test helpers ---

    def add_document(
        self,
        remote_path: str,
        content: bytes | str,
        updated_at: datetime | None = None,
    ) -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.documents[remote_path] = {
            "content": content,
            "updated_at": updated_at or datetime.now(timezone.utc),
        }

    def calls_to(self, *methods: str) -> list[tuple]:
        return [c for c in self.calls if c[0] in methods]

    @property
    def content_calls(self) -> list[tuple]:
        return self.calls_to("get_document_content")

    @property
    def mutation_calls(self) -> list[tuple]:
        return self.calls_to(
            "create_or_update_document", "upload_binary", "delete_document"
        )

    # --- WikiClient surface ---

    def validate_connection(self) -> int:
        return 1

    def get_spaces(self) -> list[dict[str, Any]]:
        return [{"id": self.space_id, "name": self.space_name}]

    def get_space_name(self, space_id: int) -> str:
        self.calls.append(("get_space_name", space_id))
        if space_id != self.space_id:
            raise NotFoundError(f"Space {space_id} not found")
        return self.space_name

    def list_documents(self, space_id: int) -> list[RemoteDocument]:
        self.calls.append(("list_documents", space_id))
        if self.fail_listing:
            raise TransientIOError("connection refused")
        return [
            RemoteDocument(
                remote_path=path,
                title=PurePosixPath(path).stem,
                updated_at=doc["updated_at"],
            )
            for path, doc in self.documents.items()
        ]

    def get_document_content(self, remote_path: str, space_name: str) -> bytes:
        self.calls.append(("get_document_content", remote_path, space_name))
        if remote_path not in self.documents:
            raise NotFoundError(remote_path)
        return self.documents[remote_path]["content"]

    def create_or_update_document(
        self, title: str, content: str, space_id: int, path: str
    ) -> dict[str, Any]:
        self.calls.append(
            ("create_or_update_document", title, content, space_id, path)
        )
        self.add_document(path, content)
        return {"success": True}

    def upload_binary(
        self, data: bytes, file_name: str, space_id: int, folder_path: str = ""
    ) -> dict[str, Any]:
        self.calls.append(
            ("upload_binary", data, file_name, space_id, folder_path)
        )
        path = f"{folder_path}/{file_name}" if folder_path else file_name
        self.add_document(path, data)
        return {"success": True}

    def delete_document(self, remote_path: str, space_id: int) -> None:
        self.calls.append(("delete_document", remote_path, space_id))
        if remote_path not in self.documents:
            raise NotFoundError(remote_path)
        del self.documents[remote_path]


@pytest.fixture
def fake_client():
    return FakeWikiClient()


class FakeObserver:
    """Stands in for a watchdog Observer; never emits events itself."""

    def __init__(self) -> None:
        self.scheduled: list[tuple] = []
        self.started = False
        self.stopped = False
        self.joined = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        self.joined = True
