import logging
import threading
from typing import Any
from urllib.parse import quote

import requests

from ..config import Config
from ..errors import NotFoundError, TransientIOError, WikiApiError
from ..sync.models import RemoteDocument

logger = logging.getLogger(__name__)

SYNC_TAG = "daemon-sync"


class WikiClient:
    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.api_url = self._get_api_url()

    @property
    def session(self) -> requests.Session:
        """Session bound to the calling thread."""
        return self._get_session()

    def _get_api_url(self) -> str:
        return f"{self.config.wiki_url.rstrip('/')}/applications/wiki/api"

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.auth = (self.config.username, self.config.password)
        session.verify = not self.config.insecure
        return session

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Send a request to the wiki API and map failures onto daemon errors.

        Raises:
            TransientIOError: Connection failure, timeout, or 5xx response.
            NotFoundError: 404 response.
            WikiApiError: Any other non-2xx response or malformed request.
        """
        url = f"{self.api_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self._get_session().request(
                method, url, timeout=(10, 60), **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientIOError(f"{method} {path} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise WikiApiError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status == 404:
            raise NotFoundError(f"{method} {path}: not found")
        if status >= 500:
            raise TransientIOError(
                f"{method} {path}: server error {status}"
            )
        if status >= 400:
            raise WikiApiError(
                f"{method} {path}: HTTP {status} {response.text[:200]}",
                status_code=status,
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise WikiApiError(
                f"Invalid JSON in response from {response.url}",
                status_code=response.status_code,
            ) from exc

    # ------------------------------------------------------------------
    # Spaces
    # ------------------------------------------------------------------

    def get_spaces(self) -> list[dict[str, Any]]:
        """
        List all spaces visible to the configured user.
        """
        data = self._json(self._request("GET", "/spaces"))
        if not isinstance(data, list):
            raise WikiApiError("Expected a list of spaces")
        return data

    def get_space_name(self, space_id: int) -> str:
        """
        Resolve the display name of a space; content lookups are keyed by it.

        Raises:
            NotFoundError: If no space has the given ID.
        """
        for space in self.get_spaces():
            if str(space.get("id")) == str(space_id):
                return str(space.get("name") or "")
        raise NotFoundError(f"Space {space_id} not found")

    def validate_connection(self) -> int:
        """
        Validate credentials and reachability by listing spaces.
        Returns the number of visible spaces.
        """
        return len(self.get_spaces())

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def list_documents(self, space_id: int) -> list[RemoteDocument]:
        """
        List every document in a space.
        """
        data = self._json(self._request("GET", f"/spaces/{space_id}/documents"))
        if isinstance(data, dict):
            data = data.get("documents", [])
        if not isinstance(data, list):
            raise WikiApiError(f"Expected a document list for space {space_id}")
        documents = [
            RemoteDocument.from_api(item)
            for item in data
            if isinstance(item, dict)
        ]
        logger.debug(
            "Found %d documents in space %s", len(documents), space_id
        )
        return documents

    def get_document_content(self, remote_path: str, space_name: str) -> bytes:
        """
        Fetch the raw content of a document.

        The server answers either with the bytes themselves or with a JSON
        envelope carrying a ``content`` string.
        """
        response = self._request(
            "GET",
            "/documents/content",
            params={"path": remote_path, "spaceName": space_name},
        )
        content_type = response.headers.get("Content-Type", "")
        if "application/json" in content_type:
            data = self._json(response)
            if isinstance(data, dict) and isinstance(data.get("content"), str):
                return data["content"].encode("utf-8")
            if isinstance(data, str):
                return data.encode("utf-8")
        return response.content

    def create_or_update_document(
        self, title: str, content: str, space_id: int, path: str
    ) -> Any:
        """
        Create a text document, or replace the one already at *path*.

        Args:
            title: Document title (the file stem)
            content: UTF-8 text body
            space_id: Target space
            path: Watch-root-relative POSIX path

        Returns:
            Decoded JSON response body
        """
        payload = {
            "title": title,
            "content": content,
            "spaceId": space_id,
            "tags": [SYNC_TAG],
            "path": path,
        }
        response = self._request("POST", "/documents", json=payload)
        return self._json(response) if response.content else None

    def upload_binary(
        self,
        data: bytes,
        file_name: str,
        space_id: int,
        folder_path: str = "",
    ) -> Any:
        """
        Upload raw bytes as a multipart form to the upload endpoint.
        """
        form: dict[str, str] = {"spaceId": str(space_id)}
        if folder_path:
            form["folderPath"] = folder_path
        response = self._request(
            "POST",
            "/documents/upload",
            data=form,
            files={"file": (file_name, data)},
        )
        return self._json(response) if response.content else None

    def delete_document(self, remote_path: str, space_id: int) -> None:
        """
        Delete the document at *remote_path*.

        Raises:
            NotFoundError: If the document is already gone.
        """
        self._request(
            "DELETE",
            f"/documents/{quote(remote_path, safe='')}",
            json={"spaceId": space_id},
        )
