import asyncio
import copy

from .errors import GatewayError, NotFound, RolloutError, TrafficSwitchFailed, UnhealthyGreen
from .models import REVISION_ANNOTATION, BlueGreenOptions, RollbackOutcome, Strategy
from .strategies import (StrategyExecutor, container_image, replica_counts, run_step, step_summary,
                         strip_server_fields)

BLUE = "blue"
GREEN = "green"
SELECTOR_KEY = "version"
BLUE_REPLICAS_ANNOTATION = "rollout-control/blue-replicas"


def workload_name(target, color):
    return f"{target.service_name}-{color}"


def service_name(target):
    return f"{target.service_name}-service"


def _set_version_label(labels, color):
    labels = dict(labels or {})
    labels[SELECTOR_KEY] = color
    return labels


def build_green_spec(blue, artifact_ref):
    """Clone the blue workload manifest into a green one running artifact_ref at zero replicas"""
    green = strip_server_fields(copy.deepcopy(blue))
    metadata = green.setdefault("metadata", {})
    name = metadata["name"]
    if name.endswith(f"-{BLUE}"):
        name = name[:-len(BLUE)] + GREEN
    else:
        name = f"{name}-{GREEN}"
    metadata["name"] = name
    metadata["labels"] = _set_version_label(metadata.get("labels"), GREEN)

    annotations = dict(metadata.get("annotations") or {})
    annotations.pop(REVISION_ANNOTATION, None)
    annotations[BLUE_REPLICAS_ANNOTATION] = str(blue.get("spec", {}).get("replicas") or 0)
    metadata["annotations"] = annotations

    spec = green.setdefault("spec", {})
    selector = spec.setdefault("selector", {})
    selector["matchLabels"] = _set_version_label(selector.get("matchLabels"), GREEN)
    template = spec.setdefault("template", {})
    template_meta = template.setdefault("metadata", {})
    template_meta["labels"] = _set_version_label(template_meta.get("labels"), GREEN)

    for container in template.get("spec", {}).get("containers") or []:
        for env in container.get("env") or []:
            if env.get("name") == "DEPLOYMENT_VERSION":
                env["value"] = GREEN
    containers = template.get("spec", {}).get("containers") or []
    if containers:
        containers[0]["image"] = artifact_ref
    spec["replicas"] = 0
    return green


class BlueGreenExecutor(StrategyExecutor):
    """Two parallel workloads behind one service; traffic moves by flipping the version selector"""
    strategy = Strategy.BLUE_GREEN

    def __init__(self, gateway, options=None, smoke_tests=None):
        super().__init__(gateway)
        self.options = options or BlueGreenOptions()
        self.smoke_tests = smoke_tests

    async def deploy(self, target, artifact_ref, options=None):
        return await self.complete_blue_green_deployment(target, artifact_ref, options)

    async def rollback(self, target):
        return await self.rollback_to_blue(target, self.options)

    async def live_workload(self, target):
        service = await self.gateway.get_service(service_name(target), target.namespace)
        color = (service.get("spec", {}).get("selector") or {}).get(SELECTOR_KEY) or BLUE
        return workload_name(target, color)

    async def cleanup(self, target):
        green = workload_name(target, GREEN)
        if await self.gateway.workload_exists(green, target.namespace):
            await self.gateway.scale_workload(green, target.namespace, 0)
            self.logger.info(f"Scaled {target.namespace}/{green} down to 0")

    async def check_health(self, target, color, options=None):
        """Readiness and liveness of one color"""
        opts = options or self.options
        name = workload_name(target, color)
        workload = await self.gateway.get_workload(name, target.namespace)
        ready, desired = replica_counts(workload)
        errors = []
        if not (desired > 0 and ready >= desired):
            errors.append(f"Readiness check failed: {ready}/{desired} replicas ready")

        pods = await self.gateway.list_pods(target.namespace, f"app={target.service_name},{SELECTOR_KEY}={color}")
        if pods:
            live = sum(1 for pod in pods if _pod_ready(pod))
            liveness_pct = live / len(pods) * 100.0
        else:
            available = (workload.get("status") or {}).get("availableReplicas") or 0
            liveness_pct = available / desired * 100.0 if desired else 0.0
        if liveness_pct < opts.liveness_threshold:
            errors.append(f"Liveness check failed: {liveness_pct:.1f}% live, need {opts.liveness_threshold}%")

        return {
            "workload": name,
            "healthy": not errors,
            "ready_replicas": ready,
            "desired_replicas": desired,
            "liveness_pct": liveness_pct,
            "errors": errors,
        }

    async def deploy_to_green(self, target, artifact_ref, options=None):
        opts = options or self.options
        blue = await self.gateway.get_workload(workload_name(target, BLUE), target.namespace)
        green_spec = build_green_spec(blue, artifact_ref)
        green = green_spec["metadata"]["name"]
        await self.gateway.apply_workload(green_spec)

        replicas = opts.replicas or blue.get("spec", {}).get("replicas") or opts.default_replicas
        await self.gateway.scale_workload(green, target.namespace, replicas)
        self.logger.info(f"Green workload {target.namespace}/{green} scaled to {replicas} running {artifact_ref}")

        await self.wait_for_ready(green, target.namespace, opts.ready_timeout_s, opts.poll_interval_s)
        health = await self.check_health(target, GREEN, opts)
        if not health["healthy"]:
            raise UnhealthyGreen(f"Green environment health check failed: {', '.join(health['errors'])}",
                                 health["errors"])
        return {"workload": green, "replicas": replicas, "image": artifact_ref}

    async def test_green(self, target, options=None):
        opts = options or self.options
        if opts.skip_tests:
            return {"skipped": True}
        if self.smoke_tests is not None:
            results = await self.smoke_tests(target, workload_name(target, GREEN))
        else:
            health = await self.check_health(target, GREEN, opts)
            results = {"tests_run": ["health-check"], "failed_tests": [] if health["healthy"] else ["health-check"]}
        failed = results.get("failed_tests") or []
        if failed:
            raise UnhealthyGreen(f"Green environment tests failed: {', '.join(failed)}", failed)
        return results

    async def switch_to_green(self, target, options=None):
        """Point the service at green and verify the selector, reverting it when verification fails"""
        opts = options or self.options
        health = await self.check_health(target, GREEN, opts)
        if not health["healthy"]:
            raise UnhealthyGreen("Green environment is not healthy, refusing to switch traffic", health["errors"])

        svc = service_name(target)
        service = await self.gateway.get_service(svc, target.namespace)
        previous = (service.get("spec", {}).get("selector") or {}).get(SELECTOR_KEY)
        await self.gateway.update_service_selector(svc, target.namespace, SELECTOR_KEY, GREEN)
        self.logger.info(f"Switched {target.namespace}/{svc} selector from {previous} to {GREEN}")
        await asyncio.sleep(opts.settle_delay_s)

        try:
            service = await self.gateway.get_service(svc, target.namespace)
            current = (service.get("spec", {}).get("selector") or {}).get(SELECTOR_KEY)
            problem = f"selector reads {current}"
        except GatewayError as e:
            current = None
            problem = f"selector read failed: {e}"

        if current != GREEN:
            restore = previous or BLUE
            self.logger.error(f"Traffic switch verification failed for {target} ({problem}), reverting to {restore}")
            await self.gateway.update_service_selector(svc, target.namespace, SELECTOR_KEY, restore)
            raise TrafficSwitchFailed(f"Traffic switch verification failed: {problem}", previous=restore)
        return {"previous": previous, "selector": GREEN}

    async def monitor_post_switch(self, target, options=None):
        opts = options or self.options
        loop = asyncio.get_running_loop()
        started = loop.time()
        checks = 0
        while loop.time() - started < opts.observation_window_s:
            await asyncio.sleep(opts.observation_interval_s)
            health = await self.check_health(target, GREEN, opts)
            checks += 1
            if not health["healthy"]:
                raise UnhealthyGreen("Post-switch monitoring detected issues", health["errors"])
        return {"monitored_for_s": opts.observation_window_s, "checks": checks}

    async def scale_down_blue(self, target, options=None):
        opts = options or self.options
        if opts.keep_blue:
            return {"skipped": True}
        blue = workload_name(target, BLUE)
        await self.gateway.scale_workload(blue, target.namespace, 0)
        self.logger.info(f"Scaled {target.namespace}/{blue} down to 0")
        return {"workload": blue, "replicas": 0}

    async def complete_blue_green_deployment(self, target, artifact_ref, options=None):
        opts = options or self.options
        steps = []
        self.logger.info(f"Starting blue-green deployment of {artifact_ref} to {target}")
        try:
            await run_step(steps, "deploy_to_green", self.deploy_to_green(target, artifact_ref, opts))
            await run_step(steps, "green_testing", self.test_green(target, opts))
            await run_step(steps, "traffic_switch", self.switch_to_green(target, opts))
            await run_step(steps, "post_switch_monitoring", self.monitor_post_switch(target, opts))
            await run_step(steps, "scale_down_blue", self.scale_down_blue(target, opts))
        except Exception as e:
            self.logger.error(f"Blue-green deployment of {target} failed: {e}")
            rolled_back = await self._recover(target, opts)
            if isinstance(e, RolloutError) and rolled_back:
                e.rolled_back = True
            raise

        self.logger.info(f"Blue-green deployment of {target} completed")
        return {
            "strategy": self.strategy.value,
            "image": artifact_ref,
            "selector": GREEN,
            "steps": [step_summary(s) for s in steps],
        }

    async def _recover(self, target, options):
        rolled_back = False
        try:
            await self.rollback_to_blue(target, options)
            rolled_back = True
        except Exception as e:
            self.logger.error(f"Rollback to blue failed for {target}: {e}")
        try:
            await self.cleanup(target)
        except Exception as e:
            self.logger.error(f"Scaling down green failed for {target}: {e}")
        return rolled_back

    async def rollback_to_blue(self, target, options=None):
        """Send traffic back to blue at its prior size; safe to repeat"""
        opts = options or self.options
        svc = service_name(target)
        blue_name = workload_name(target, BLUE)
        service = await self.gateway.get_service(svc, target.namespace)
        current = (service.get("spec", {}).get("selector") or {}).get(SELECTOR_KEY)
        blue = await self.gateway.get_workload(blue_name, target.namespace)

        from_version = None
        if current and current != BLUE:
            try:
                from_version = container_image(await self.gateway.get_workload(workload_name(target, current),
                                                                              target.namespace))
            except NotFound:
                pass
            await self.gateway.update_service_selector(svc, target.namespace, SELECTOR_KEY, BLUE)
            self.logger.warning(f"Switched {target.namespace}/{svc} selector back to {BLUE}")

        replicas = await self._prior_blue_replicas(target, blue, opts)
        if (blue.get("spec", {}).get("replicas") or 0) != replicas:
            await self.gateway.scale_workload(blue_name, target.namespace, replicas)
        await self.wait_for_ready(blue_name, target.namespace, opts.ready_timeout_s, opts.poll_interval_s)

        self.logger.info(f"Rollback of {target} to {BLUE} completed")
        return RollbackOutcome(
            strategy=self.strategy,
            from_version=from_version,
            to_version=container_image(blue),
            detail={"selector": BLUE, "blue_replicas": replicas, "switched": bool(current and current != BLUE)},
        )

    async def _prior_blue_replicas(self, target, blue, options):
        try:
            green = await self.gateway.get_workload(workload_name(target, GREEN), target.namespace)
            recorded = (green.get("metadata", {}).get("annotations") or {}).get(BLUE_REPLICAS_ANNOTATION)
        except NotFound:
            recorded = None
        if recorded and int(recorded) > 0:
            return int(recorded)
        return blue.get("spec", {}).get("replicas") or options.default_replicas


def _pod_ready(pod):
    for condition in (pod.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False
