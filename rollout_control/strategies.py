import asyncio
import copy

from .errors import DeploymentTimeout, RollbackExecutionFailed
from .logger import get_logger
from .models import REVISION_ANNOTATION, BlueGreenOptions, RollbackOutcome, StageResult, Strategy


def container_image(workload):
    containers = workload.get("spec", {}).get("template", {}).get("spec", {}).get("containers") or []
    return containers[0].get("image") if containers else None


def set_container_image(workload, image):
    containers = workload["spec"]["template"]["spec"]["containers"]
    containers[0]["image"] = image


def replica_counts(workload):
    """(ready, desired) for a workload manifest"""
    spec = workload.get("spec") or {}
    status = workload.get("status") or {}
    return status.get("readyReplicas") or 0, spec.get("replicas") or 0


def all_replicas_ready(workload):
    ready, desired = replica_counts(workload)
    return desired > 0 and ready >= desired


def rollout_complete(workload):
    status = workload.get("status") or {}
    desired = (workload.get("spec") or {}).get("replicas") or 0
    return (desired > 0
            and (status.get("readyReplicas") or 0) >= desired
            and (status.get("updatedReplicas") or 0) >= desired
            and (status.get("availableReplicas") or 0) >= desired)


def strip_server_fields(manifest):
    manifest.pop("status", None)
    metadata = manifest.get("metadata") or {}
    for key in ("resourceVersion", "uid", "creationTimestamp", "generation", "managedFields", "selfLink"):
        metadata.pop(key, None)
    return manifest


def step_summary(step):
    return {
        "name": step.name,
        "status": step.status.value,
        "duration_s": step.duration_s,
        "detail": step.detail,
    }


async def run_step(steps, name, awaitable):
    """Append a step, await it and record how it ended"""
    step = StageResult(name=name)
    steps.append(step)
    try:
        detail = await awaitable
    except Exception as e:
        step.fail(e)
        raise
    step.complete(detail if isinstance(detail, dict) else None)
    return detail


class StrategyExecutor:
    """Common surface the orchestrator and the rollback monitor drive"""
    strategy = None

    def __init__(self, gateway):
        self.gateway = gateway
        self.logger = get_logger(self.strategy.value if self.strategy else "strategy")

    async def deploy(self, target, artifact_ref, options=None):
        raise NotImplementedError

    async def rollback(self, target):
        raise NotImplementedError

    async def cleanup(self, target):
        """Undo side effects of a failed deploy where that is safe"""

    async def live_workload(self, target):
        """Name of the workload currently serving traffic"""
        return target.service_name

    async def wait_for_ready(self, name, namespace, timeout_s, poll_interval_s, complete=all_replicas_ready):
        """Poll until the workload reports every replica ready or raise DeploymentTimeout"""

        async def poll():
            while True:
                workload = await self.gateway.get_workload(name, namespace)
                if complete(workload):
                    self.logger.debug(f"Workload {namespace}/{name} is ready")
                    return workload
                await asyncio.sleep(poll_interval_s)

        try:
            return await asyncio.wait_for(poll(), timeout=timeout_s)
        except asyncio.TimeoutError:
            self.logger.error(f"Workload {namespace}/{name} did not become ready within {timeout_s}s")
            raise DeploymentTimeout(f"Deployment {name} did not become ready within {timeout_s}s")


class RollingExecutor(StrategyExecutor):
    """In-place rolling update with revision-based undo"""
    strategy = Strategy.ROLLING

    def __init__(self, gateway, options=None):
        super().__init__(gateway)
        self.options = options or BlueGreenOptions()

    async def deploy(self, target, artifact_ref, options=None):
        opts = options or self.options
        steps = []
        workload = await self.gateway.get_workload(target.service_name, target.namespace)
        previous = container_image(workload)
        spec = strip_server_fields(copy.deepcopy(workload))
        set_container_image(spec, artifact_ref)
        await run_step(steps, "update_image", self._apply(spec))
        await run_step(steps, "wait_for_rollout", self._wait(target, opts))
        self.logger.info(f"Rolling update of {target} completed: {previous} -> {artifact_ref}")
        return {
            "strategy": self.strategy.value,
            "image": artifact_ref,
            "previous_image": previous,
            "steps": [step_summary(s) for s in steps],
        }

    async def _apply(self, spec):
        applied = await self.gateway.apply_workload(spec)
        return {"revision": applied.get("metadata", {}).get("annotations", {}).get(REVISION_ANNOTATION)}

    async def _wait(self, target, opts):
        await self.wait_for_ready(target.service_name, target.namespace, opts.ready_timeout_s,
                                  opts.poll_interval_s, complete=rollout_complete)
        return {"ready": True}

    async def rollback(self, target):
        """Re-apply the pod template of the previous revision"""
        name, namespace = target.service_name, target.namespace
        self.logger.info(f"Rolling back {target} to its previous revision")
        workload = await self.gateway.get_workload(name, namespace)
        replica_sets = await self.gateway.list_replica_sets(namespace, f"app={name}")

        revisions = []
        for rs in replica_sets:
            revision = (rs.get("metadata", {}).get("annotations") or {}).get(REVISION_ANNOTATION)
            if revision is not None:
                revisions.append((int(revision), rs))
        revisions.sort(key=lambda pair: pair[0], reverse=True)
        if len(revisions) < 2:
            raise RollbackExecutionFailed(f"No previous revision available for rollback of {target}")

        target_revision, previous_rs = revisions[1]
        spec = strip_server_fields(copy.deepcopy(workload))
        spec["spec"]["template"] = copy.deepcopy(previous_rs["spec"]["template"])
        spec["spec"]["template"].setdefault("metadata", {}).setdefault("labels", {}).pop("pod-template-hash", None)
        from_version = container_image(workload)
        await self.gateway.apply_workload(spec)
        await self.wait_for_ready(name, namespace, self.options.ready_timeout_s,
                                  self.options.poll_interval_s, complete=rollout_complete)
        self.logger.info(f"Rollback of {target} to revision {target_revision} completed")
        return RollbackOutcome(
            strategy=self.strategy,
            from_version=from_version,
            to_version=container_image(spec),
            detail={"to_revision": str(target_revision), "method": "revision_undo"},
        )
