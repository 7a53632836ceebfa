# ABOUTME: Async HTTP clients for the target-environment API and the version-control endpoint
# ABOUTME: Wraps httpx with retry logic and converts HTTP failures into reconciler errors

"""
HTTP clients with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The reconciler talks to exactly two external systems:

1. TARGET API: the environment being reconciled. Object-level
   get/list/create/update/delete, every object addressed by
   (kind, namespace, name).

2. SOURCE API: the version-control endpoint. Read-only: resolve a branch
   head, fetch the file tree of a commit under a path.

Both clients share the same lifecycle and request plumbing (_JsonApiClient)
and differ only in their endpoints and in how failures are classified.

=============================================================================
TARGET API CONTRACT
=============================================================================

    GET    /api/v1/namespaces/{ns}/{kind}?labelSelector=...   - List objects
    GET    /api/v1/namespaces/{ns}/{kind}/{name}              - Get object
    POST   /api/v1/namespaces/{ns}/{kind}                     - Create object
    PUT    /api/v1/namespaces/{ns}/{kind}/{name}              - Update object
    DELETE /api/v1/namespaces/{ns}/{kind}/{name}              - Delete object

`kind` is lowercased in the path ("Deployment" -> "deployment").
Errors carry {"message": "...", "error": "..."} bodies.

=============================================================================
SOURCE API CONTRACT
=============================================================================

    GET /api/v1/repos/{repo}/branches/{branch}
        -> {"commit": {"id": "<sha>"}}

    GET /api/v1/repos/{repo}/tree/{commit}?path=<path>
        -> {"files": [{"path": "apps/web/base/web.yaml", "content": "..."}]}

=============================================================================
LIFECYCLE
=============================================================================

    async with TargetClient(endpoint) as client:
        obj = await client.get_object("Deployment", "default", "web")

__aenter__ creates the httpx connection pool, __aexit__ closes it even if
the body raised.
"""

# =============================================================================
# IMPORTS
# =============================================================================

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.errors import SourceUnavailable, TargetApiError

if TYPE_CHECKING:
    from gitops_reconciler.config import SourceEndpoint, TargetEndpoint

logger = structlog.get_logger(__name__)


# =============================================================================
# SHARED PLUMBING
# =============================================================================


class _JsonApiClient:
    """
    Async JSON-over-HTTP client base.

    Subclasses set `_name` (for logs) and call `_send()`; the connection
    pool lives between __aenter__ and __aexit__.
    """

    _name = "api"

    def __init__(
        self,
        base_url: str,
        token: str,
        insecure: bool = False,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url
        self._token = token
        self._insecure = insecure
        self._timeout = timeout
        # HTTP client is created in __aenter__, not here
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Any:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            verify=not self._insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        logger.debug("API request", api=self._name, method=method, path=path)
        return await self._client.request(method, path, params=params, json=json_data)

    @staticmethod
    def _error_parts(response: httpx.Response) -> tuple[str, str | None]:
        """Extract (message, details) from an error response."""
        message = f"HTTP {response.status_code}"
        details = None
        try:
            error_json = response.json()
            message = error_json.get("message", message)
            details = error_json.get("error")
        except Exception:
            # Not JSON; fall back to the raw body
            details = response.text[:200] if response.text else None
        return message, details


# =============================================================================
# TARGET API CLIENT
# =============================================================================


class TargetClient(_JsonApiClient):
    """
    Client for the target-environment API.

    RETRY LOGIC:
    ------------
    Requests that time out are retried with exponential backoff:
    - Attempt 1: Immediate
    - Attempt 2: Wait 1 second
    - Attempt 3: Wait 2 seconds
    - Give up: Raise httpx.TimeoutException

    HTTP error statuses are NOT retried here; they surface as TargetApiError
    and the reconciler decides what a failure means for that object.
    """

    _name = "target"

    def __init__(self, endpoint: TargetEndpoint, timeout: float = 30.0) -> None:
        super().__init__(
            base_url=f"{endpoint.url}/api/v1",
            token=endpoint.token.get_secret_value(),
            insecure=endpoint.insecure,
            timeout=timeout,
        )
        self._endpoint = endpoint

    async def __aenter__(self) -> TargetClient:
        await super().__aenter__()
        return self

    @staticmethod
    def _collection_path(kind: str, namespace: str) -> str:
        return f"/namespaces/{quote(namespace, safe='')}/{quote(kind.lower(), safe='')}"

    def _object_path(self, kind: str, namespace: str, name: str) -> str:
        return f"{self._collection_path(kind, namespace)}/{quote(name, safe='')}"

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make a request and return the decoded JSON body.

        Raises:
            TargetApiError: On 4xx/5xx responses
            httpx.TimeoutException: When every attempt timed out
            RuntimeError: If the client was not entered with `async with`
        """
        response = await self._send(method, path, params=params, json_data=json_data)

        if response.status_code >= 400:
            message, details = self._error_parts(response)
            if response.status_code != 404:
                logger.warning(
                    "Target API error",
                    method=method,
                    path=path,
                    status=response.status_code,
                    message=message,
                )
            raise TargetApiError(code=response.status_code, message=message, details=details)

        result = response.json() if response.content else {}
        return result if isinstance(result, dict) else {}

    # =========================================================================
    # OBJECT OPERATIONS
    # =========================================================================

    async def get_object(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        """
        Get one live object.

        Returns:
            The object manifest, or None if it does not exist (404).
        """
        try:
            return await self._request("GET", self._object_path(kind, namespace, name))
        except TargetApiError as e:
            if e.not_found:
                return None
            raise

    async def list_objects(
        self,
        kind: str,
        namespace: str,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        List objects of one kind in one namespace.

        Args:
            kind: Object kind, e.g. "Deployment"
            namespace: Namespace to list
            label_selector: Kubernetes-style selector, e.g. "app=web,tier=prod"
        """
        params = {"labelSelector": label_selector} if label_selector else None
        data = await self._request("GET", self._collection_path(kind, namespace), params=params)
        items = data.get("items") or []
        return list(items) if isinstance(items, list) else []

    async def create_object(self, manifest: dict[str, Any]) -> dict[str, Any]:
        metadata = manifest.get("metadata", {})
        return await self._request(
            "POST",
            self._collection_path(manifest["kind"], metadata["namespace"]),
            json_data=manifest,
        )

    async def update_object(self, manifest: dict[str, Any]) -> dict[str, Any]:
        metadata = manifest.get("metadata", {})
        return await self._request(
            "PUT",
            self._object_path(manifest["kind"], metadata["namespace"], metadata["name"]),
            json_data=manifest,
        )

    async def delete_object(self, kind: str, namespace: str, name: str) -> None:
        """Delete one object. An object that is already gone counts as deleted."""
        try:
            await self._request("DELETE", self._object_path(kind, namespace, name))
        except TargetApiError as e:
            if not e.not_found:
                raise


# =============================================================================
# SOURCE API CLIENT
# =============================================================================


class SourceClient(_JsonApiClient):
    """
    Read-only client for the version-control endpoint.

    Every failure (connection refused, timeout, non-2xx) becomes
    SourceUnavailable. 5xx and transport errors are marked retryable; other
    4xx are not, since asking again will not change the answer.
    Retrying itself is the SourceTracker's job.
    """

    _name = "source"

    def __init__(self, endpoint: SourceEndpoint, timeout: float = 30.0) -> None:
        super().__init__(
            base_url=f"{endpoint.url}/api/v1",
            token=endpoint.token.get_secret_value(),
            insecure=endpoint.insecure,
            timeout=timeout,
        )
        self._endpoint = endpoint

    async def __aenter__(self) -> SourceClient:
        await super().__aenter__()
        return self

    @property
    def endpoint_label(self) -> str:
        return f"{self._endpoint.url}/{self._endpoint.repo}@{self._endpoint.branch}"

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._send("GET", path, params=params)
        except httpx.HTTPError as e:
            raise SourceUnavailable(self.endpoint_label, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            message, details = self._error_parts(response)
            reason = f"HTTP {response.status_code}: {message}"
            if details:
                reason += f" - {details}"
            raise SourceUnavailable(
                self.endpoint_label,
                reason,
                retryable=response.status_code >= 500,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SourceUnavailable(self.endpoint_label, "response is not JSON") from e
        if not isinstance(data, dict):
            raise SourceUnavailable(self.endpoint_label, "unexpected response shape")
        return data

    async def resolve_branch(self, branch: str | None = None) -> str:
        """Return the commit id at the head of the branch."""
        branch = branch or self._endpoint.branch
        repo = quote(self._endpoint.repo, safe="/")
        data = await self._get(f"/repos/{repo}/branches/{quote(branch, safe='')}")
        commit_id = (data.get("commit") or {}).get("id")
        if not commit_id:
            raise SourceUnavailable(self.endpoint_label, f"branch '{branch}' has no commit id")
        return str(commit_id)

    async def fetch_tree(self, commit_id: str, path: str | None = None) -> dict[str, str]:
        """
        Fetch every file under `path` at `commit_id`.

        Returns:
            Mapping of repository-relative file path to file content.
        """
        path = self._endpoint.path if path is None else path
        repo = quote(self._endpoint.repo, safe="/")
        params = {"path": path} if path else None
        data = await self._get(f"/repos/{repo}/tree/{quote(commit_id, safe='')}", params=params)

        files: dict[str, str] = {}
        for entry in data.get("files") or []:
            if not isinstance(entry, dict) or "path" not in entry:
                raise SourceUnavailable(self.endpoint_label, "malformed tree entry")
            files[str(entry["path"])] = str(entry.get("content", ""))
        return files
