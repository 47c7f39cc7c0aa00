import asyncio
import copy

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .canary import FLAGGER_GROUP, FLAGGER_PLURAL, FLAGGER_VERSION
from .errors import GatewayError, NotFound
from .interfaces import ClusterGateway
from .logger import get_logger


def format_selector(selector):
    if isinstance(selector, dict):
        return ",".join(f"{k}={v}" for k, v in selector.items())
    return selector or ""


class KubernetesGateway(ClusterGateway):
    """ClusterGateway backed by the official kubernetes client; blocking calls run in worker threads"""

    def __init__(self, apps_api=None, core_api=None, custom_api=None, api_client=None, request_timeout_s=30.0,
                 retry_max_attempts=0, retry_base_delay_s=0.5):
        self.api_client = api_client or client.ApiClient()
        self.apps = apps_api or client.AppsV1Api(self.api_client)
        self.core = core_api or client.CoreV1Api(self.api_client)
        self.custom = custom_api or client.CustomObjectsApi(self.api_client)
        self.request_timeout_s = request_timeout_s
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay_s = retry_base_delay_s
        self.logger = get_logger("kube")

    @classmethod
    def from_settings(cls, settings):
        if settings.in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(context=settings.kube_context)
        return cls(
            request_timeout_s=settings.request_timeout_s,
            retry_max_attempts=settings.retry_max_attempts,
            retry_base_delay_s=settings.retry_base_delay_s,
        )

    async def _call(self, operation, fn, *args, **kwargs):
        """Run one API call with a timeout, retrying transient failures with exponential backoff"""
        max_attempts = max(1, self.retry_max_attempts + 1)
        for attempt in range(1, max_attempts + 1):
            try:
                result = await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs),
                                                timeout=self.request_timeout_s)
                return self.api_client.sanitize_for_serialization(result)
            except ApiException as e:
                error = self._translate(operation, e)
                if not self._retryable(error) or attempt >= max_attempts:
                    raise error from e
            except asyncio.TimeoutError as e:
                error = GatewayError(f"{operation} timed out after {self.request_timeout_s}s")
                if attempt >= max_attempts:
                    raise error from e

            backoff = min((2 ** (attempt - 1)) * self.retry_base_delay_s, 30.0)
            self.logger.warning(f"{operation} attempt {attempt} failed: {error.message}, retrying in {backoff}s")
            await asyncio.sleep(backoff)

    @staticmethod
    def _translate(operation, e):
        if e.status == 404:
            return NotFound(f"{operation}: {e.reason or 'not found'}")
        return GatewayError(f"{operation} failed: {e.status} {e.reason or ''}".strip(), status=e.status)

    @staticmethod
    def _retryable(error):
        return error.status is None or error.status == 429 or error.status >= 500

    async def get_workload(self, name, namespace):
        return await self._call("get_workload", self.apps.read_namespaced_deployment, name, namespace)

    async def apply_workload(self, spec):
        name = spec["metadata"]["name"]
        namespace = spec["metadata"].get("namespace", "default")
        try:
            await self.get_workload(name, namespace)
        except NotFound:
            self.logger.info(f"Creating deployment {namespace}/{name}")
            return await self._call("apply_workload", self.apps.create_namespaced_deployment, namespace, spec)
        return await self._call("apply_workload", self.apps.replace_namespaced_deployment, name, namespace, spec)

    async def scale_workload(self, name, namespace, replicas):
        await self._call("scale_workload", self.apps.patch_namespaced_deployment_scale, name, namespace,
                         {"spec": {"replicas": replicas}})
        return await self.get_workload(name, namespace)

    async def get_service(self, name, namespace):
        return await self._call("get_service", self.core.read_namespaced_service, name, namespace)

    async def update_service_selector(self, name, namespace, key, value):
        await self._call("update_service_selector", self.core.patch_namespaced_service, name, namespace,
                         {"spec": {"selector": {key: value}}})

    async def list_pods(self, namespace, selector):
        pods = await self._call("list_pods", self.core.list_namespaced_pod, namespace,
                                label_selector=format_selector(selector))
        return pods.get("items") or []

    async def list_replica_sets(self, namespace, selector):
        sets = await self._call("list_replica_sets", self.apps.list_namespaced_replica_set, namespace,
                                label_selector=format_selector(selector))
        return sets.get("items") or []

    async def get_progressive_resource(self, name, namespace):
        return await self._call("get_progressive_resource", self.custom.get_namespaced_custom_object,
                                FLAGGER_GROUP, FLAGGER_VERSION, namespace, FLAGGER_PLURAL, name)

    async def apply_progressive_resource(self, spec):
        name = spec["metadata"]["name"]
        namespace = spec["metadata"].get("namespace", "default")
        try:
            existing = await self.get_progressive_resource(name, namespace)
        except NotFound:
            self.logger.info(f"Creating canary {namespace}/{name}")
            return await self._call("apply_progressive_resource", self.custom.create_namespaced_custom_object,
                                    FLAGGER_GROUP, FLAGGER_VERSION, namespace, FLAGGER_PLURAL, spec)
        body = copy.deepcopy(spec)
        body["metadata"]["resourceVersion"] = existing["metadata"].get("resourceVersion")
        return await self._call("apply_progressive_resource", self.custom.replace_namespaced_custom_object,
                                FLAGGER_GROUP, FLAGGER_VERSION, namespace, FLAGGER_PLURAL, name, body)

    async def patch_annotation(self, name, namespace, key, value):
        await self._call("patch_annotation", self.custom.patch_namespaced_custom_object,
                         FLAGGER_GROUP, FLAGGER_VERSION, namespace, FLAGGER_PLURAL, name,
                         {"metadata": {"annotations": {key: value}}})

    async def get_namespace(self, name):
        return await self._call("get_namespace", self.core.read_namespace, name)
