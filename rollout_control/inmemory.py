"""Simulated cluster, metrics and build collaborators.

Used by the test-suite and by the CLI ``memory`` backend, where the cluster
snapshot is loaded from and saved back to a JSON file.
"""
import asyncio
import copy

from .errors import GatewayError, NotFound
from .failure import FailureInjector
from .interfaces import Builder, ClusterGateway, MetricsSource
from .models import REVISION_ANNOTATION, BuildResult


def parse_selector(selector):
    if isinstance(selector, dict):
        return dict(selector)
    labels = {}
    for part in (selector or "").split(","):
        if "=" in part:
            key, value = part.split("=", 1)
            labels[key.strip()] = value.strip()
    return labels


def _matches(labels, wanted):
    return all(labels.get(k) == v for k, v in wanted.items())


def _template_labels(workload):
    return (((workload.get("spec") or {}).get("template") or {}).get("metadata") or {}).get("labels") or {}


def workload_manifest(name, namespace="default", image="app:latest", replicas=3, labels=None, env=None):
    labels = dict(labels or {"app": name})
    container = {"name": "app", "image": image}
    if env:
        container["env"] = [{"name": k, "value": v} for k, v in env.items()]
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels), "annotations": {}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {"containers": [container]},
            },
        },
    }


class InMemoryClusterGateway(ClusterGateway):
    def __init__(self, failure_injector=None, never_ready=None):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.workloads = {}
        self.services = {}
        self.progressive = {}
        self.replica_sets = {}
        self.namespaces = {"default"}
        self.ready_overrides = {name: 0 for name in (never_ready or [])}
        self.canary_scripts = {}
        self.calls = []

    async def _call(self, operation, name=None):
        self.calls.append((operation, name))
        delay = self.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        if self.failure_injector.should_fail(operation, name):
            raise GatewayError(f"Injected failure: {operation} {name or ''}".strip(), status=503)

    def count_calls(self, operation, name=None):
        return sum(1 for op, n in self.calls if op == operation and (name is None or n == name))

    # Seeding helpers

    def add_namespace(self, name):
        self.namespaces.add(name)

    def add_workload(self, name, namespace="default", image="app:latest", replicas=3, labels=None, env=None):
        manifest = workload_manifest(name, namespace, image, replicas, labels, env)
        self._store_workload(manifest)
        return manifest

    def add_service(self, name, namespace="default", selector=None):
        self.namespaces.add(namespace)
        self.services[(namespace, name)] = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"selector": dict(selector or {})},
        }

    def seed_blue_green(self, service_name, namespace="default", image="app:v1", replicas=3):
        labels = {"app": service_name, "version": "blue"}
        self.add_workload(f"{service_name}-blue", namespace, image, replicas, labels,
                          env={"DEPLOYMENT_VERSION": "blue"})
        self.add_service(f"{service_name}-service", namespace, {"app": service_name, "version": "blue"})

    def seed_rolling(self, service_name, namespace="default", image="app:v1", replicas=3):
        self.add_workload(service_name, namespace, image, replicas, {"app": service_name})
        self.add_service(service_name, namespace, {"app": service_name})

    def set_ready(self, name, ready):
        """Pin the ready replica count of a workload (None clears the pin)"""
        if ready is None:
            self.ready_overrides.pop(name, None)
        else:
            self.ready_overrides[name] = ready
        for (ns, wname), workload in self.workloads.items():
            if wname == name:
                self._refresh_status(workload)

    def script_canary(self, name, statuses):
        """Statuses returned by successive polls; the last one repeats"""
        self.canary_scripts[name] = [
            {"phase": s} if isinstance(s, str) else dict(s) for s in statuses
        ]

    def selector_of(self, service_name, namespace="default", key="version"):
        return self.services[(namespace, service_name)]["spec"]["selector"].get(key)

    def replicas_of(self, name, namespace="default"):
        return self.workloads[(namespace, name)]["spec"].get("replicas", 0)

    def image_of(self, name, namespace="default"):
        return self.workloads[(namespace, name)]["spec"]["template"]["spec"]["containers"][0]["image"]

    # Internal state handling

    def _refresh_status(self, workload):
        name = workload["metadata"]["name"]
        replicas = workload["spec"].get("replicas") or 0
        ready = min(self.ready_overrides.get(name, replicas), replicas)
        workload["status"] = {
            "replicas": replicas,
            "readyReplicas": ready,
            "availableReplicas": ready,
            "updatedReplicas": replicas,
        }

    def _store_workload(self, manifest):
        manifest = copy.deepcopy(manifest)
        metadata = manifest.setdefault("metadata", {})
        namespace = metadata.setdefault("namespace", "default")
        name = metadata["name"]
        self.namespaces.add(namespace)
        existing = self.workloads.get((namespace, name))
        annotations = metadata.setdefault("annotations", {}) or {}
        metadata["annotations"] = annotations
        template = manifest.get("spec", {}).get("template")
        if existing is None:
            revision = 1
        else:
            revision = int(existing["metadata"].get("annotations", {}).get(REVISION_ANNOTATION, "1"))
            if existing.get("spec", {}).get("template") != template:
                revision += 1
        if existing is None or existing.get("spec", {}).get("template") != template:
            self.replica_sets.setdefault((namespace, name), []).append({
                "metadata": {
                    "name": f"{name}-{revision}",
                    "namespace": namespace,
                    "labels": dict(_template_labels(manifest)),
                    "annotations": {REVISION_ANNOTATION: str(revision)},
                },
                "spec": {"template": copy.deepcopy(template)},
            })
        annotations[REVISION_ANNOTATION] = str(revision)
        self._refresh_status(manifest)
        self.workloads[(namespace, name)] = manifest
        return manifest

    def _workload(self, name, namespace):
        try:
            return self.workloads[(namespace, name)]
        except KeyError:
            raise NotFound(f"Workload {namespace}/{name} not found")

    # ClusterGateway

    async def get_workload(self, name, namespace):
        await self._call("get_workload", name)
        return copy.deepcopy(self._workload(name, namespace))

    async def apply_workload(self, spec):
        await self._call("apply_workload", spec["metadata"]["name"])
        return copy.deepcopy(self._store_workload(spec))

    async def scale_workload(self, name, namespace, replicas):
        await self._call("scale_workload", name)
        workload = self._workload(name, namespace)
        workload["spec"]["replicas"] = replicas
        self._refresh_status(workload)
        return copy.deepcopy(workload)

    async def get_service(self, name, namespace):
        await self._call("get_service", name)
        try:
            return copy.deepcopy(self.services[(namespace, name)])
        except KeyError:
            raise NotFound(f"Service {namespace}/{name} not found")

    async def update_service_selector(self, name, namespace, key, value):
        await self._call("update_service_selector", name)
        if (namespace, name) not in self.services:
            raise NotFound(f"Service {namespace}/{name} not found")
        self.services[(namespace, name)]["spec"].setdefault("selector", {})[key] = value

    async def list_pods(self, namespace, selector):
        await self._call("list_pods", selector)
        wanted = parse_selector(selector)
        pods = []
        for (ns, name), workload in sorted(self.workloads.items()):
            labels = _template_labels(workload)
            if ns != namespace or not _matches(labels, wanted):
                continue
            status = workload.get("status") or {}
            ready = status.get("readyReplicas", 0)
            for i in range(status.get("replicas", 0)):
                pods.append({
                    "metadata": {"name": f"{name}-{i}", "namespace": ns, "labels": dict(labels)},
                    "status": {
                        "phase": "Running",
                        "conditions": [{"type": "Ready", "status": "True" if i < ready else "False"}],
                    },
                })
        return pods

    async def list_replica_sets(self, namespace, selector):
        await self._call("list_replica_sets", selector)
        wanted = parse_selector(selector)
        result = []
        for (ns, _), sets in sorted(self.replica_sets.items()):
            if ns != namespace:
                continue
            result.extend(copy.deepcopy(rs) for rs in sets if _matches(rs["metadata"]["labels"], wanted))
        return result

    async def get_progressive_resource(self, name, namespace):
        await self._call("get_progressive_resource", name)
        try:
            resource = self.progressive[(namespace, name)]
        except KeyError:
            raise NotFound(f"Canary {namespace}/{name} not found")
        script = self.canary_scripts.get(name)
        if script:
            resource["status"] = script.pop(0) if len(script) > 1 else dict(script[0])
        return copy.deepcopy(resource)

    async def apply_progressive_resource(self, spec):
        name = spec["metadata"]["name"]
        await self._call("apply_progressive_resource", name)
        namespace = spec["metadata"].get("namespace", "default")
        resource = copy.deepcopy(spec)
        existing = self.progressive.get((namespace, name))
        resource["status"] = (existing or {}).get("status") or {"phase": "Initializing"}
        self.progressive[(namespace, name)] = resource
        return copy.deepcopy(resource)

    async def patch_annotation(self, name, namespace, key, value):
        await self._call("patch_annotation", name)
        try:
            resource = self.progressive[(namespace, name)]
        except KeyError:
            raise NotFound(f"Canary {namespace}/{name} not found")
        resource["metadata"].setdefault("annotations", {})[key] = value

    async def get_namespace(self, name):
        await self._call("get_namespace", name)
        if name not in self.namespaces:
            raise NotFound(f"Namespace {name} not found")
        return {"metadata": {"name": name}}

    # Snapshots

    def to_dict(self):
        return {
            "namespaces": sorted(self.namespaces),
            "workloads": [copy.deepcopy(w) for w in self.workloads.values()],
            "services": [copy.deepcopy(s) for s in self.services.values()],
            "progressive": [copy.deepcopy(p) for p in self.progressive.values()],
            "replica_sets": [copy.deepcopy(rs) for sets in self.replica_sets.values() for rs in sets],
            "ready_overrides": dict(self.ready_overrides),
        }

    @classmethod
    def from_dict(cls, data, failure_injector=None):
        gateway = cls(failure_injector=failure_injector)
        gateway.ready_overrides = dict(data.get("ready_overrides") or {})
        for namespace in data.get("namespaces", []):
            gateway.namespaces.add(namespace)
        for rs in data.get("replica_sets", []):
            meta = rs["metadata"]
            owner = meta["name"].rsplit("-", 1)[0]
            gateway.replica_sets.setdefault((meta.get("namespace", "default"), owner), []).append(copy.deepcopy(rs))
        for workload in data.get("workloads", []):
            meta = workload["metadata"]
            key = (meta.get("namespace", "default"), meta["name"])
            gateway.namespaces.add(key[0])
            gateway.workloads[key] = copy.deepcopy(workload)
            if key not in gateway.replica_sets:
                gateway.replica_sets[key] = []
            gateway._refresh_status(gateway.workloads[key])
        for service in data.get("services", []):
            meta = service["metadata"]
            gateway.services[(meta.get("namespace", "default"), meta["name"])] = copy.deepcopy(service)
        for resource in data.get("progressive", []):
            meta = resource["metadata"]
            gateway.progressive[(meta.get("namespace", "default"), meta["name"])] = copy.deepcopy(resource)
        return gateway


class StaticMetricsSource(MetricsSource):
    def __init__(self, response_time_ms=200.0, error_rate_pct=0.5, throughput=1000.0, business=None,
                 failure_injector=None):
        self.response_time_ms = response_time_ms
        self.error_rate_pct = error_rate_pct
        self.throughput = throughput
        self.business = dict(business or {})
        self.failure_injector = failure_injector if failure_injector else FailureInjector()

    def _check(self, operation):
        if self.failure_injector.should_fail(operation):
            raise GatewayError(f"Injected failure: {operation}", status=503)

    async def sample_response_time(self, target):
        self._check("sample_response_time")
        return self.response_time_ms

    async def sample_error_rate(self, target):
        self._check("sample_error_rate")
        return self.error_rate_pct

    async def sample_throughput(self, target):
        self._check("sample_throughput")
        return self.throughput

    async def sample_business_metric(self, target, name):
        self._check("sample_business_metric")
        return self.business.get(name)


class StaticBuilder(Builder):
    """Returns a fixed build outcome and records every build request"""

    def __init__(self, registry="registry.local", duration_s=0.0, cache_hit_ratio=0.0, fail=False):
        self.registry = registry
        self.duration_s = duration_s
        self.cache_hit_ratio = cache_hit_ratio
        self.fail = fail
        self.builds = []

    async def build(self, target, spec):
        self.builds.append((target, dict(spec)))
        if self.fail:
            raise GatewayError(f"Build failed for {target.service_name}")
        return BuildResult(
            artifact_ref=f"{self.registry}/{target.service_name}:{spec.get('version') or 'latest'}",
            duration_s=self.duration_s,
            cache_hit_ratio=self.cache_hit_ratio,
        )
