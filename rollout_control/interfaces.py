"""Contracts for the systems the control plane drives but does not own.

Every method is a coroutine and may raise ``GatewayError`` (or ``NotFound``
for missing objects). Workloads, services, pods, replica sets and
progressive-delivery resources are exchanged as plain manifest dicts in the
camelCase shape the cluster API uses.
"""
from abc import ABC, abstractmethod

from .errors import NotFound
from .logger import get_logger
from .models import BuildResult


class ClusterGateway(ABC):

    @abstractmethod
    async def get_workload(self, name, namespace):
        """Return the workload manifest"""

    @abstractmethod
    async def apply_workload(self, spec):
        """Create the workload or replace the existing one"""

    @abstractmethod
    async def scale_workload(self, name, namespace, replicas):
        pass

    @abstractmethod
    async def get_service(self, name, namespace):
        pass

    @abstractmethod
    async def update_service_selector(self, name, namespace, key, value):
        pass

    @abstractmethod
    async def list_pods(self, namespace, selector):
        pass

    @abstractmethod
    async def list_replica_sets(self, namespace, selector):
        pass

    @abstractmethod
    async def get_progressive_resource(self, name, namespace):
        pass

    @abstractmethod
    async def apply_progressive_resource(self, spec):
        pass

    @abstractmethod
    async def patch_annotation(self, name, namespace, key, value):
        """Set an annotation on the progressive-delivery resource"""

    @abstractmethod
    async def get_namespace(self, name):
        pass

    async def workload_exists(self, name, namespace):
        try:
            await self.get_workload(name, namespace)
        except NotFound:
            return False
        return True

    async def progressive_resource_exists(self, name, namespace):
        try:
            await self.get_progressive_resource(name, namespace)
        except NotFound:
            return False
        return True


class MetricsSource(ABC):
    """Point samples for one target, read on demand"""

    @abstractmethod
    async def sample_response_time(self, target):
        """p95 response time in milliseconds"""

    @abstractmethod
    async def sample_error_rate(self, target):
        """Error rate in percent"""

    @abstractmethod
    async def sample_throughput(self, target):
        """Requests per second"""

    async def sample_business_metric(self, target, name):
        """Business metric value, or None when the source does not track it"""
        return None


class Builder(ABC):

    @abstractmethod
    async def build(self, target, spec):
        """Build the service and return a BuildResult (or an artifact reference string)"""


class TagBuilder(Builder):
    """Resolves the artifact reference from registry, service and version without building"""

    def __init__(self, registry=None):
        self.registry = registry

    async def build(self, target, spec):
        tag = f"{target.service_name}:{spec.get('version') or 'latest'}"
        if self.registry:
            tag = f"{self.registry.rstrip('/')}/{tag}"
        return BuildResult(artifact_ref=tag, skipped=True)


class Notifier(ABC):

    @abstractmethod
    async def notify(self, event):
        pass


class LoggingNotifier(Notifier):

    def __init__(self):
        self.logger = get_logger("notifier")

    async def notify(self, event):
        self.logger.info(f"Notification [{event.get('type', 'event')}] for {event.get('target')}: {event.get('message', '')}")
