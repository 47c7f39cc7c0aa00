import time
import pytest
from unittest.mock import MagicMock, patch
from kubernetes.client.rest import ApiException
from rollout_control.config import Settings
from rollout_control.errors import GatewayError, NotFound
from rollout_control.kube import KubernetesGateway, format_selector


def make_gateway(**kwargs):
    apps, core, custom = MagicMock(), MagicMock(), MagicMock()
    # Patch and replace calls answer with plain manifests like the real client does after sanitizing
    apps.patch_namespaced_deployment_scale.return_value = {}
    core.patch_namespaced_service.return_value = {}
    custom.patch_namespaced_custom_object.return_value = {}
    custom.replace_namespaced_custom_object.return_value = {}
    kwargs.setdefault("retry_base_delay_s", 0)
    gateway = KubernetesGateway(apps_api=apps, core_api=core, custom_api=custom, **kwargs)
    return gateway, apps, core, custom


def deployment(name, image="app:v1"):
    return {
        "metadata": {"name": name, "namespace": "default", "resourceVersion": "41"},
        "spec": {"replicas": 3, "template": {"spec": {"containers": [{"name": "app", "image": image}]}}},
    }


class TestWorkloadCalls:
    """Deployment reads and writes."""

    @pytest.mark.asyncio
    async def test_get_workload(self):
        gateway, apps, _, _ = make_gateway()
        apps.read_namespaced_deployment.return_value = deployment("checkout-blue")

        workload = await gateway.get_workload("checkout-blue", "default")

        assert workload["metadata"]["name"] == "checkout-blue"
        apps.read_namespaced_deployment.assert_called_once_with("checkout-blue", "default")

    @pytest.mark.asyncio
    async def test_missing_workload_raises_not_found(self):
        gateway, apps, _, _ = make_gateway(retry_max_attempts=3)
        apps.read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(NotFound):
            await gateway.get_workload("checkout-green", "default")
        assert apps.read_namespaced_deployment.call_count == 1

    @pytest.mark.asyncio
    async def test_apply_creates_missing_workload(self):
        gateway, apps, _, _ = make_gateway()
        spec = deployment("checkout-green", "app:v2")
        apps.read_namespaced_deployment.side_effect = ApiException(status=404)
        apps.create_namespaced_deployment.return_value = spec

        await gateway.apply_workload(spec)

        apps.create_namespaced_deployment.assert_called_once_with("default", spec)
        apps.replace_namespaced_deployment.assert_not_called()

    @pytest.mark.asyncio
    async def test_apply_replaces_existing_workload(self):
        gateway, apps, _, _ = make_gateway()
        spec = deployment("checkout", "app:v2")
        apps.read_namespaced_deployment.return_value = deployment("checkout")
        apps.replace_namespaced_deployment.return_value = spec

        await gateway.apply_workload(spec)

        apps.replace_namespaced_deployment.assert_called_once_with("checkout", "default", spec)

    @pytest.mark.asyncio
    async def test_scale_patches_scale_subresource(self):
        gateway, apps, _, _ = make_gateway()
        apps.read_namespaced_deployment.return_value = deployment("checkout-blue")

        await gateway.scale_workload("checkout-blue", "default", 0)

        apps.patch_namespaced_deployment_scale.assert_called_once_with(
            "checkout-blue", "default", {"spec": {"replicas": 0}})

    @pytest.mark.asyncio
    async def test_list_replica_sets(self):
        gateway, apps, _, _ = make_gateway()
        apps.list_namespaced_replica_set.return_value = {"items": [{"metadata": {"name": "api-1"}}]}

        sets = await gateway.list_replica_sets("default", {"app": "api"})

        assert sets == [{"metadata": {"name": "api-1"}}]
        apps.list_namespaced_replica_set.assert_called_once_with("default", label_selector="app=api")


class TestServiceCalls:
    """Services, pods and namespaces."""

    @pytest.mark.asyncio
    async def test_update_service_selector_patches_one_key(self):
        gateway, _, core, _ = make_gateway()

        await gateway.update_service_selector("checkout-service", "default", "version", "green")

        core.patch_namespaced_service.assert_called_once_with(
            "checkout-service", "default", {"spec": {"selector": {"version": "green"}}})

    @pytest.mark.asyncio
    async def test_list_pods_formats_selector(self):
        gateway, _, core, _ = make_gateway()
        core.list_namespaced_pod.return_value = {"items": []}

        pods = await gateway.list_pods("default", {"app": "checkout", "version": "green"})

        assert pods == []
        core.list_namespaced_pod.assert_called_once_with("default", label_selector="app=checkout,version=green")

    @pytest.mark.asyncio
    async def test_get_namespace(self):
        gateway, _, core, _ = make_gateway()
        core.read_namespace.side_effect = ApiException(status=404)

        with pytest.raises(NotFound):
            await gateway.get_namespace("production")


class TestProgressiveResourceCalls:
    """Canary custom resources."""

    @pytest.mark.asyncio
    async def test_replace_carries_resource_version(self):
        gateway, _, _, custom = make_gateway()
        custom.get_namespaced_custom_object.return_value = {"metadata": {"name": "payments-canary",
                                                                         "resourceVersion": "77"}}
        spec = {"metadata": {"name": "payments-canary", "namespace": "default"}, "spec": {}}

        await gateway.apply_progressive_resource(spec)

        args = custom.replace_namespaced_custom_object.call_args[0]
        assert args[:5] == ("flagger.app", "v1beta1", "default", "canaries", "payments-canary")
        assert args[5]["metadata"]["resourceVersion"] == "77"
        assert "resourceVersion" not in spec["metadata"]

    @pytest.mark.asyncio
    async def test_create_when_missing(self):
        gateway, _, _, custom = make_gateway()
        custom.get_namespaced_custom_object.side_effect = ApiException(status=404)
        custom.create_namespaced_custom_object.return_value = {"metadata": {"name": "payments-canary"}}
        spec = {"metadata": {"name": "payments-canary", "namespace": "default"}, "spec": {}}

        resource = await gateway.apply_progressive_resource(spec)

        assert resource["metadata"]["name"] == "payments-canary"
        custom.create_namespaced_custom_object.assert_called_once_with(
            "flagger.app", "v1beta1", "default", "canaries", spec)

    @pytest.mark.asyncio
    async def test_patch_annotation(self):
        gateway, _, _, custom = make_gateway()

        await gateway.patch_annotation("payments-canary", "default", "flagger.app/promote", "true")

        custom.patch_namespaced_custom_object.assert_called_once_with(
            "flagger.app", "v1beta1", "default", "canaries", "payments-canary",
            {"metadata": {"annotations": {"flagger.app/promote": "true"}}})


class TestRetries:
    """Transient failure handling."""

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self):
        gateway, _, core, _ = make_gateway(retry_max_attempts=2)
        core.read_namespaced_service.side_effect = [ApiException(status=503), {"metadata": {"name": "svc"}}]

        service = await gateway.get_service("svc", "default")

        assert service == {"metadata": {"name": "svc"}}
        assert core.read_namespaced_service.call_count == 2

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        gateway, _, core, _ = make_gateway(retry_max_attempts=2)
        core.read_namespaced_service.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(GatewayError) as excinfo:
            await gateway.get_service("svc", "default")

        assert excinfo.value.status == 403
        assert core.read_namespaced_service.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        gateway, _, core, _ = make_gateway(retry_max_attempts=2)
        core.read_namespaced_service.side_effect = ApiException(status=429, reason="Too Many Requests")

        with pytest.raises(GatewayError) as excinfo:
            await gateway.get_service("svc", "default")

        assert excinfo.value.status == 429
        assert core.read_namespaced_service.call_count == 3

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        gateway, _, core, _ = make_gateway(request_timeout_s=0.05)
        core.read_namespaced_service.side_effect = lambda *args: time.sleep(0.3)

        with pytest.raises(GatewayError, match="timed out"):
            await gateway.get_service("svc", "default")


class TestConstruction:
    """Client configuration."""

    def test_format_selector(self):
        assert format_selector({"app": "checkout", "version": "blue"}) == "app=checkout,version=blue"
        assert format_selector("app=checkout") == "app=checkout"
        assert format_selector(None) == ""

    def test_from_settings_uses_kube_config_context(self):
        settings = Settings(kube_context="staging", request_timeout_s=12, retry_max_attempts=4)
        with patch("rollout_control.kube.config.load_kube_config") as load_kube_config:
            gateway = KubernetesGateway.from_settings(settings)

        load_kube_config.assert_called_once_with(context="staging")
        assert gateway.request_timeout_s == 12
        assert gateway.retry_max_attempts == 4

    def test_from_settings_in_cluster(self):
        with patch("rollout_control.kube.config.load_incluster_config") as load_incluster_config:
            KubernetesGateway.from_settings(Settings(in_cluster=True))

        load_incluster_config.assert_called_once_with()
