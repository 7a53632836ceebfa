# ABOUTME: Unit tests for the source and target API clients
# ABOUTME: Tests lifecycle, request paths, error mapping and response parsing with respx

import json

import httpx
import pytest
import respx

from gitops_reconciler.config import SourceEndpoint, TargetEndpoint
from gitops_reconciler.errors import SourceUnavailable, TargetApiError
from gitops_reconciler.utils.client import SourceClient, TargetClient

TARGET_URL = "https://target.example.com/api/v1"
SOURCE_URL = "https://git.example.com/api/v1"


@pytest.mark.unit
class TestTargetApiError:
    """Tests for TargetApiError."""

    def test_str_without_details(self):
        """Test string form without details."""
        assert str(TargetApiError(500, "boom")) == "Target API error (500): boom"

    def test_str_with_details(self):
        """Test string form with details."""
        error = TargetApiError(409, "conflict", "resourceVersion mismatch")
        assert str(error) == "Target API error (409): conflict - resourceVersion mismatch"

    def test_not_found(self):
        """Test the 404 shortcut."""
        assert TargetApiError(404, "missing").not_found is True
        assert TargetApiError(500, "boom").not_found is False


@pytest.mark.unit
class TestClientLifecycle:
    """Tests for the async context manager."""

    async def test_context_manager_creates_and_closes_client(self, target_endpoint: TargetEndpoint):
        """Test async with creates httpx client and closes it on exit."""
        client = TargetClient(target_endpoint)
        assert client._client is None

        async with client as c:
            assert c is client
            assert isinstance(client._client, httpx.AsyncClient)

        assert client._client is None

    async def test_request_outside_context_raises(self, target_endpoint: TargetEndpoint):
        """Test that requests need the context manager."""
        client = TargetClient(target_endpoint)

        with pytest.raises(RuntimeError, match="not initialized"):
            await client.get_object("Deployment", "apps", "web")

    @respx.mock
    async def test_bearer_token_sent(self, target_endpoint: TargetEndpoint):
        """Test that the token is sent as a bearer header."""
        route = respx.get(f"{TARGET_URL}/namespaces/apps/deployment/web").mock(
            return_value=httpx.Response(200, json={"kind": "Deployment"})
        )

        async with TargetClient(target_endpoint) as client:
            await client.get_object("Deployment", "apps", "web")

        assert route.calls.last.request.headers["Authorization"] == "Bearer target-token"


@pytest.mark.unit
class TestTargetClient:
    """Tests for TargetClient object operations."""

    @respx.mock
    async def test_get_object(self, target_endpoint: TargetEndpoint):
        """Test reading one object."""
        respx.get(f"{TARGET_URL}/namespaces/apps/deployment/web").mock(
            return_value=httpx.Response(200, json={"kind": "Deployment", "metadata": {"name": "web"}})
        )

        async with TargetClient(target_endpoint) as client:
            obj = await client.get_object("Deployment", "apps", "web")

        assert obj == {"kind": "Deployment", "metadata": {"name": "web"}}

    @respx.mock
    async def test_get_object_not_found_returns_none(self, target_endpoint: TargetEndpoint):
        """Test that 404 means the object does not exist."""
        respx.get(f"{TARGET_URL}/namespaces/apps/deployment/web").mock(
            return_value=httpx.Response(404, json={"message": "not found"})
        )

        async with TargetClient(target_endpoint) as client:
            assert await client.get_object("Deployment", "apps", "web") is None

    @respx.mock
    async def test_get_object_server_error_raises(self, target_endpoint: TargetEndpoint):
        """Test that other errors surface as TargetApiError."""
        respx.get(f"{TARGET_URL}/namespaces/apps/deployment/web").mock(
            return_value=httpx.Response(500, json={"message": "internal", "error": "etcd timeout"})
        )

        async with TargetClient(target_endpoint) as client:
            with pytest.raises(TargetApiError) as exc_info:
                await client.get_object("Deployment", "apps", "web")

        assert exc_info.value.code == 500
        assert exc_info.value.message == "internal"
        assert exc_info.value.details == "etcd timeout"

    @respx.mock
    async def test_non_json_error_body(self, target_endpoint: TargetEndpoint):
        """Test that a plain-text error body becomes the details."""
        respx.get(f"{TARGET_URL}/namespaces/apps/deployment/web").mock(
            return_value=httpx.Response(502, text="bad gateway")
        )

        async with TargetClient(target_endpoint) as client:
            with pytest.raises(TargetApiError) as exc_info:
                await client.get_object("Deployment", "apps", "web")

        assert exc_info.value.message == "HTTP 502"
        assert exc_info.value.details == "bad gateway"

    @respx.mock
    async def test_list_objects_with_selector(self, target_endpoint: TargetEndpoint):
        """Test listing with a label selector."""
        route = respx.get(f"{TARGET_URL}/namespaces/apps/service").mock(
            return_value=httpx.Response(200, json={"items": [{"metadata": {"name": "web"}}]})
        )

        async with TargetClient(target_endpoint) as client:
            items = await client.list_objects("Service", "apps", label_selector="app=web")

        assert items == [{"metadata": {"name": "web"}}]
        assert route.calls.last.request.url.params["labelSelector"] == "app=web"

    @respx.mock
    async def test_list_objects_without_items(self, target_endpoint: TargetEndpoint):
        """Test that a body without items is an empty list."""
        respx.get(f"{TARGET_URL}/namespaces/apps/service").mock(return_value=httpx.Response(200, json={}))

        async with TargetClient(target_endpoint) as client:
            assert await client.list_objects("Service", "apps") == []

    @respx.mock
    async def test_create_object_posts_manifest(self, target_endpoint: TargetEndpoint):
        """Test that create POSTs to the collection."""
        manifest = {"kind": "Service", "metadata": {"name": "web", "namespace": "apps"}}
        route = respx.post(f"{TARGET_URL}/namespaces/apps/service").mock(
            return_value=httpx.Response(201, json=manifest)
        )

        async with TargetClient(target_endpoint) as client:
            await client.create_object(manifest)

        assert json.loads(route.calls.last.request.content) == manifest

    @respx.mock
    async def test_update_object_puts_manifest(self, target_endpoint: TargetEndpoint):
        """Test that update PUTs to the object path."""
        manifest = {"kind": "Deployment", "metadata": {"name": "web", "namespace": "apps"}}
        route = respx.put(f"{TARGET_URL}/namespaces/apps/deployment/web").mock(
            return_value=httpx.Response(200, json=manifest)
        )

        async with TargetClient(target_endpoint) as client:
            await client.update_object(manifest)

        assert route.called

    @respx.mock
    async def test_delete_object_tolerates_not_found(self, target_endpoint: TargetEndpoint):
        """Test that deleting an object that is already gone succeeds."""
        respx.delete(f"{TARGET_URL}/namespaces/apps/deployment/web").mock(
            return_value=httpx.Response(404, json={"message": "not found"})
        )

        async with TargetClient(target_endpoint) as client:
            await client.delete_object("Deployment", "apps", "web")

    @respx.mock
    async def test_delete_object_forbidden_raises(self, target_endpoint: TargetEndpoint):
        """Test that other delete failures are raised."""
        respx.delete(f"{TARGET_URL}/namespaces/apps/deployment/web").mock(
            return_value=httpx.Response(403, json={"message": "forbidden"})
        )

        async with TargetClient(target_endpoint) as client:
            with pytest.raises(TargetApiError, match="forbidden"):
                await client.delete_object("Deployment", "apps", "web")

    @respx.mock
    async def test_empty_body_is_empty_dict(self, target_endpoint: TargetEndpoint):
        """Test that an empty success body decodes to {}."""
        manifest = {"kind": "Service", "metadata": {"name": "web", "namespace": "apps"}}
        respx.post(f"{TARGET_URL}/namespaces/apps/service").mock(return_value=httpx.Response(204))

        async with TargetClient(target_endpoint) as client:
            assert await client.create_object(manifest) == {}


@pytest.mark.unit
class TestSourceClient:
    """Tests for SourceClient."""

    @respx.mock
    async def test_resolve_branch(self, source_endpoint: SourceEndpoint):
        """Test resolving the branch head."""
        respx.get(f"{SOURCE_URL}/repos/platform/deploy/branches/main").mock(
            return_value=httpx.Response(200, json={"commit": {"id": "abc123"}})
        )

        async with SourceClient(source_endpoint) as client:
            assert await client.resolve_branch() == "abc123"

    @respx.mock
    async def test_resolve_branch_without_commit(self, source_endpoint: SourceEndpoint):
        """Test that a branch without a commit id is an error."""
        respx.get(f"{SOURCE_URL}/repos/platform/deploy/branches/main").mock(
            return_value=httpx.Response(200, json={"commit": {}})
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(SourceUnavailable, match="no commit id"):
                await client.resolve_branch()

    @respx.mock
    async def test_fetch_tree(self, source_endpoint: SourceEndpoint):
        """Test fetching files under the path filter."""
        route = respx.get(f"{SOURCE_URL}/repos/platform/deploy/tree/abc123").mock(
            return_value=httpx.Response(
                200,
                json={"files": [{"path": "apps/web/base/web.yaml", "content": "kind: Deployment"}]},
            )
        )

        async with SourceClient(source_endpoint) as client:
            files = await client.fetch_tree("abc123")

        assert files == {"apps/web/base/web.yaml": "kind: Deployment"}
        assert route.calls.last.request.url.params["path"] == "apps/web"

    @respx.mock
    async def test_fetch_tree_malformed_entry(self, source_endpoint: SourceEndpoint):
        """Test that a tree entry without a path is rejected."""
        respx.get(f"{SOURCE_URL}/repos/platform/deploy/tree/abc123").mock(
            return_value=httpx.Response(200, json={"files": [{"content": "x"}]})
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(SourceUnavailable, match="malformed"):
                await client.fetch_tree("abc123")

    @respx.mock
    async def test_server_error_is_retryable(self, source_endpoint: SourceEndpoint):
        """Test that 5xx responses are marked retryable."""
        respx.get(f"{SOURCE_URL}/repos/platform/deploy/branches/main").mock(
            return_value=httpx.Response(503, json={"message": "unavailable"})
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(SourceUnavailable) as exc_info:
                await client.resolve_branch()

        assert exc_info.value.retryable is True
        assert "503" in str(exc_info.value)

    @respx.mock
    async def test_client_error_is_not_retryable(self, source_endpoint: SourceEndpoint):
        """Test that 4xx responses are not retried."""
        respx.get(f"{SOURCE_URL}/repos/platform/deploy/branches/main").mock(
            return_value=httpx.Response(404, json={"message": "no such branch"})
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(SourceUnavailable) as exc_info:
                await client.resolve_branch()

        assert exc_info.value.retryable is False

    @respx.mock
    async def test_connection_error(self, source_endpoint: SourceEndpoint):
        """Test that transport failures become retryable SourceUnavailable."""
        respx.get(f"{SOURCE_URL}/repos/platform/deploy/branches/main").mock(
            side_effect=httpx.ConnectError("refused")
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(SourceUnavailable) as exc_info:
                await client.resolve_branch()

        assert exc_info.value.retryable is True

    @respx.mock
    async def test_non_json_response(self, source_endpoint: SourceEndpoint):
        """Test that a non-JSON success body is rejected."""
        respx.get(f"{SOURCE_URL}/repos/platform/deploy/branches/main").mock(
            return_value=httpx.Response(200, text="<html>")
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(SourceUnavailable, match="not JSON"):
                await client.resolve_branch()
