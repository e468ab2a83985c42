# ABOUTME: Unit tests for the kubernetes_asyncio backed cluster store
# ABOUTME: Tests API error mapping, dry-run arguments, namespacing and discovery failures

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes_asyncio import client
from kubernetes_asyncio.client.rest import ApiException
from kubernetes_asyncio.dynamic.exceptions import ResourceNotFoundError

from cd_sync.cluster.kube import KubernetesClusterStore, _error_from_api
from cd_sync.cluster.store import (
    ClusterError,
    ConflictError,
    InvalidObjectError,
    NotFoundError,
    ObjectRef,
)
from fakes import config_map


def api_exception(status: int, body: dict | str | None = None) -> ApiException:
    e = ApiException(status=status, reason="Reason")
    if isinstance(body, dict):
        e.body = json.dumps(body)
    else:
        e.body = body
    return e


def result(data: dict) -> MagicMock:
    response = MagicMock()
    response.to_dict.return_value = data
    return response


@pytest.fixture
def dynamic() -> MagicMock:
    resource = MagicMock()
    resource.namespaced = True
    dyn = MagicMock()
    dyn.resources.get = AsyncMock(return_value=resource)
    dyn.get = AsyncMock()
    dyn.create = AsyncMock()
    dyn.replace = AsyncMock()
    dyn.delete = AsyncMock()
    return dyn


@pytest.fixture
def kube_store(dynamic: MagicMock) -> KubernetesClusterStore:
    store = KubernetesClusterStore(client.Configuration(), name="east")
    store._dynamic = dynamic
    return store


@pytest.mark.unit
class TestErrorMapping:
    """Tests for _error_from_api."""

    @pytest.mark.parametrize(
        ("status", "error_class"),
        [
            (404, NotFoundError),
            (409, ConflictError),
            (422, InvalidObjectError),
            (400, InvalidObjectError),
            (500, ClusterError),
        ],
    )
    def test_status_mapping(self, status: int, error_class: type[ClusterError]):
        error = _error_from_api(api_exception(status), "ConfigMap/web/settings")

        assert type(error) is error_class
        assert error.code == status

    def test_message_from_status_body(self):
        body = {"message": "configmaps \"settings\" not found", "reason": "NotFound"}

        error = _error_from_api(api_exception(404, body), "ConfigMap/web/settings")

        assert error.message == 'ConfigMap/web/settings: configmaps "settings" not found'
        assert error.details == "NotFound"

    def test_non_json_body(self):
        error = _error_from_api(api_exception(502, "<html>bad gateway</html>"), "x")

        assert error.message == "x: Reason"
        assert error.details == "<html>bad gateway</html>"


@pytest.mark.unit
class TestKubernetesClusterStore:
    """Tests for KubernetesClusterStore over a mocked dynamic client."""

    async def test_get(self, kube_store: KubernetesClusterStore, dynamic: MagicMock):
        dynamic.get.return_value = result(config_map("settings"))

        obj = await kube_store.get(ObjectRef("v1", "ConfigMap", "settings", "web"))

        assert obj["metadata"]["name"] == "settings"
        dynamic.resources.get.assert_awaited_once_with(api_version="v1", kind="ConfigMap")
        assert dynamic.get.call_args.kwargs == {"name": "settings", "namespace": "web"}

    async def test_get_not_found(self, kube_store: KubernetesClusterStore, dynamic: MagicMock):
        dynamic.get.side_effect = api_exception(404)

        with pytest.raises(NotFoundError):
            await kube_store.get(ObjectRef("v1", "ConfigMap", "settings", "web"))

    async def test_discovery_is_cached(
        self, kube_store: KubernetesClusterStore, dynamic: MagicMock
    ):
        dynamic.get.return_value = result(config_map("settings"))
        ref = ObjectRef("v1", "ConfigMap", "settings", "web")

        await kube_store.get(ref)
        await kube_store.get(ref)

        assert dynamic.resources.get.await_count == 1

    async def test_unknown_kind(self, kube_store: KubernetesClusterStore, dynamic: MagicMock):
        dynamic.resources.get.side_effect = ResourceNotFoundError("no Widget")

        with pytest.raises(InvalidObjectError, match="Unknown resource example.com/v1/Widget"):
            await kube_store.get(ObjectRef("example.com/v1", "Widget", "w", "web"))

    async def test_cluster_scoped_ignores_namespace(
        self, kube_store: KubernetesClusterStore, dynamic: MagicMock
    ):
        dynamic.resources.get.return_value.namespaced = False
        dynamic.get.return_value = result({"metadata": {"name": "web"}})

        await kube_store.get(ObjectRef("v1", "Namespace", "web", "ignored"))

        assert dynamic.get.call_args.kwargs["namespace"] is None

    async def test_dry_run_create(self, kube_store: KubernetesClusterStore, dynamic: MagicMock):
        dynamic.create.return_value = result(config_map("settings"))

        await kube_store.create(config_map("settings"), dry_run=True)

        assert dynamic.create.call_args.kwargs["dry_run"] == "All"
        assert dynamic.create.call_args.kwargs["namespace"] == "web"

    async def test_create_requires_kind(self, kube_store: KubernetesClusterStore):
        with pytest.raises(InvalidObjectError, match="missing apiVersion or kind"):
            await kube_store.create({"metadata": {"name": "x"}})

    async def test_update_uses_replace(
        self, kube_store: KubernetesClusterStore, dynamic: MagicMock
    ):
        dynamic.replace.return_value = result(config_map("settings"))

        await kube_store.update(config_map("settings"))

        kwargs = dynamic.replace.call_args.kwargs
        assert kwargs["name"] == "settings"
        assert "dry_run" not in kwargs

    async def test_update_conflict(self, kube_store: KubernetesClusterStore, dynamic: MagicMock):
        dynamic.replace.side_effect = api_exception(409)

        with pytest.raises(ConflictError):
            await kube_store.update(config_map("settings"))

    async def test_update_status_uses_subresource(
        self, kube_store: KubernetesClusterStore, dynamic: MagicMock
    ):
        status_resource = MagicMock()
        dynamic.resources.get.return_value.subresources = {"status": status_resource}
        obj = config_map("settings")
        obj["status"] = {"phase": "Ready"}
        dynamic.replace.return_value = result(obj)

        assert await kube_store.update_status(obj) == obj

        assert dynamic.replace.call_args.args == (status_resource,)
        kwargs = dynamic.replace.call_args.kwargs
        assert kwargs["body"] is obj
        assert kwargs["name"] == "settings"
        assert kwargs["namespace"] == "web"

    async def test_update_status_without_subresource(
        self, kube_store: KubernetesClusterStore, dynamic: MagicMock
    ):
        dynamic.resources.get.return_value.subresources = {}

        with pytest.raises(InvalidObjectError, match="no status subresource"):
            await kube_store.update_status(config_map("settings"))
        dynamic.replace.assert_not_awaited()

    async def test_update_status_conflict(
        self, kube_store: KubernetesClusterStore, dynamic: MagicMock
    ):
        dynamic.resources.get.return_value.subresources = {"status": MagicMock()}
        dynamic.replace.side_effect = api_exception(409)

        with pytest.raises(ConflictError):
            await kube_store.update_status(config_map("settings"))

    async def test_delete(self, kube_store: KubernetesClusterStore, dynamic: MagicMock):
        await kube_store.delete(ObjectRef("v1", "ConfigMap", "settings", "web"))

        dynamic.delete.assert_awaited_once()

    async def test_list_with_selector(
        self, kube_store: KubernetesClusterStore, dynamic: MagicMock
    ):
        dynamic.get.return_value = result({"items": [config_map("a"), config_map("b")]})

        items = await kube_store.list(
            "v1", "ConfigMap", namespace="web", label_selector="cd.tmax.io/application=x"
        )

        assert [i["metadata"]["name"] for i in items] == ["a", "b"]
        assert dynamic.get.call_args.kwargs == {
            "namespace": "web",
            "label_selector": "cd.tmax.io/application=x",
        }

    async def test_list_all_namespaces(
        self, kube_store: KubernetesClusterStore, dynamic: MagicMock
    ):
        dynamic.get.return_value = result({"items": None})

        assert await kube_store.list("v1", "ConfigMap") == []
        assert dynamic.get.call_args.kwargs == {"namespace": None}

    async def test_invalid_kubeconfig(self):
        with pytest.raises(ClusterError, match="Invalid kubeconfig for cluster 'east'"):
            await KubernetesClusterStore.from_kubeconfig({}, name="east")
