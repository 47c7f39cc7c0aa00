import asyncio
import copy
import time
from dataclasses import asdict, dataclass, field

import requests

from .errors import CanaryFailed, CanaryTimeout, MetricsUnavailable, RolloutError
from .logger import get_logger
from .models import CanaryConfig, CanaryPhase, CanaryScoreWeights, CanaryState, RollbackOutcome, Strategy
from .strategies import StrategyExecutor, container_image, set_container_image, strip_server_fields

FLAGGER_GROUP = "flagger.app"
FLAGGER_VERSION = "v1beta1"
FLAGGER_PLURAL = "canaries"
PROMOTE_ANNOTATION = "flagger.app/promote"
ROLLBACK_ANNOTATION = "flagger.app/rollback"


def canary_name(target):
    return f"{target.service_name}-canary"


def primary_name(target):
    return f"{target.service_name}-primary"


def default_canary_webhooks(target, config):
    name = canary_name(target)
    return [
        {"name": "health-check", "type": "pre-rollout", "url": f"http://{name}/health", "timeout": "30s"},
        {
            "name": "integration-test",
            "type": "rollout",
            "url": config.test_runner_url,
            "timeout": "60s",
            "metadata": {"target": name},
        },
    ]


def build_canary_resource(target, config):
    """Flagger Canary manifest for the target workload"""
    svc = target.service_name
    return {
        "apiVersion": f"{FLAGGER_GROUP}/{FLAGGER_VERSION}",
        "kind": "Canary",
        "metadata": {
            "name": canary_name(target),
            "namespace": target.namespace,
            "labels": {
                "app": svc,
                "deployment-strategy": "canary",
                "managed-by": "rollout-control",
            },
        },
        "spec": {
            "targetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": svc},
            "service": {
                "port": config.port,
                "targetPort": config.target_port,
                "gateways": list(config.gateways or [f"{svc}-gateway"]),
                "hosts": list(config.hosts or [f"{svc}.{config.domain}"]),
            },
            "analysis": {
                "interval": config.interval,
                "threshold": config.threshold,
                "maxWeight": config.max_weight,
                "stepWeight": config.step_weight,
                "iterations": config.iterations,
                "metrics": copy.deepcopy(config.metrics),
                "webhooks": copy.deepcopy(config.webhooks or default_canary_webhooks(target, config)),
            },
        },
    }


def calculate_canary_score(metrics, webhooks, weights=None):
    """Weighted 0-100 score from metric samples and webhook outcomes"""
    weights = weights or CanaryScoreWeights()
    score = 0.0

    success_rate = metrics.get("success_rate", 0)
    if success_rate >= 99:
        score += weights.success_rate
    elif success_rate >= 95:
        score += weights.success_rate * 2 / 3
    else:
        score += weights.success_rate / 3

    error_rate = metrics.get("error_rate", 100)
    if error_rate <= 1:
        score += weights.error_rate
    elif error_rate <= 5:
        score += weights.error_rate / 2

    response_time = metrics.get("response_time", float("inf"))
    if response_time <= 500:
        score += weights.latency
    elif response_time <= 1000:
        score += weights.latency / 2

    if (webhooks.get("health_check") or {}).get("success"):
        score += weights.health_check
    if (webhooks.get("integration_tests") or {}).get("success"):
        score += weights.integration_tests

    if weights.total <= 0:
        return 0
    return round(score / weights.total * 100)


class HttpWebhookChecker:
    """Calls analysis webhooks over HTTP"""

    def __init__(self, session=None, timeout_s=30.0):
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.logger = get_logger("webhooks")

    async def check(self, webhook):
        return await asyncio.to_thread(self._post, webhook)

    def _post(self, webhook):
        started = time.time()
        try:
            response = self.session.post(
                webhook["url"],
                json={"name": webhook.get("name"), "metadata": webhook.get("metadata") or {}},
                timeout=self.timeout_s,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.warning(f"Webhook {webhook.get('name')} failed: {e}")
            return {"success": False, "error": str(e)}
        return {
            "success": True,
            "status_code": response.status_code,
            "response_time_ms": (time.time() - started) * 1000.0,
        }


@dataclass
class CanaryHandle:
    name: str
    namespace: str
    resource: dict
    started_at: float = field(default_factory=time.time)
    monitoring: asyncio.Future = None  # Resolves with the outcome of monitor_canary_progress


class CanaryExecutor(StrategyExecutor):
    """Delegates traffic shifting to the progressive-delivery controller and watches its verdict"""
    strategy = Strategy.CANARY

    def __init__(self, gateway, metrics=None, config=None, webhook_checker=None, score_weights=None):
        super().__init__(gateway)
        self.metrics = metrics
        self.config = config or CanaryConfig()
        self.webhook_checker = webhook_checker or HttpWebhookChecker()
        self.score_weights = score_weights or CanaryScoreWeights()

    async def deploy(self, target, artifact_ref, options=None):
        config = options or self.config
        handle = await self.start_canary_deployment(target, artifact_ref, config)
        outcome = await handle.monitoring
        return {
            "strategy": self.strategy.value,
            "canary": handle.name,
            "image": artifact_ref,
            "phase": outcome["phase"],
            "monitored_for_s": outcome["duration_s"],
        }

    async def rollback(self, target):
        name = canary_name(target)
        workload = await self.gateway.get_workload(target.service_name, target.namespace)
        await self.rollback_canary(name, target.namespace)
        return RollbackOutcome(
            strategy=self.strategy,
            from_version=container_image(workload),
            detail={"canary": name, "annotation": ROLLBACK_ANNOTATION},
        )

    async def cleanup(self, target):
        name = canary_name(target)
        if await self.gateway.progressive_resource_exists(name, target.namespace):
            await self.rollback_canary(name, target.namespace)

    async def live_workload(self, target):
        # The controller serves promoted traffic from the primary and scales the target to zero
        primary = primary_name(target)
        if await self.gateway.workload_exists(primary, target.namespace):
            return primary
        return target.service_name

    async def start_canary_deployment(self, target, artifact_ref, config=None):
        config = config or self.config
        self.logger.info(f"Starting canary deployment of {artifact_ref} to {target}")
        await self._update_image(target, artifact_ref)
        resource = await self.gateway.apply_progressive_resource(build_canary_resource(target, config))
        name = resource["metadata"]["name"]

        monitoring = asyncio.ensure_future(
            self.monitor_canary_progress(name, target.namespace, config.timeout_s, config.poll_interval_s))
        self.logger.info(f"Canary {target.namespace}/{name} started")
        return CanaryHandle(name=name, namespace=target.namespace, resource=resource, monitoring=monitoring)

    async def _update_image(self, target, artifact_ref):
        workload = await self.gateway.get_workload(target.service_name, target.namespace)
        spec = strip_server_fields(copy.deepcopy(workload))
        set_container_image(spec, artifact_ref)
        await self.gateway.apply_workload(spec)
        self.logger.debug(f"Updated {target} image to {artifact_ref}")

    async def monitor_canary_progress(self, name, namespace, timeout_s=None, poll_interval_s=None):
        """Poll the canary until the controller reports a verdict"""
        timeout_s = self.config.timeout_s if timeout_s is None else timeout_s
        poll_interval_s = self.config.poll_interval_s if poll_interval_s is None else poll_interval_s
        loop = asyncio.get_running_loop()
        started = loop.time()

        while True:
            await asyncio.sleep(poll_interval_s)
            if loop.time() - started > timeout_s:
                self.logger.error(f"Canary {namespace}/{name} timed out after {timeout_s}s")
                raise CanaryTimeout(f"Canary deployment timeout: {name}")

            state = CanaryState.from_resource(await self.gateway.get_progressive_resource(name, namespace))
            self.logger.debug(f"Canary {namespace}/{name}: phase={state.raw_phase} weight={state.weight} "
                              f"iterations={state.iterations}")

            if state.phase == CanaryPhase.SUCCEEDED:
                self.logger.info(f"Canary {namespace}/{name} succeeded")
                return {
                    "success": True,
                    "phase": state.phase.value,
                    "duration_s": loop.time() - started,
                    "final_state": asdict(state),
                }
            if state.phase == CanaryPhase.FAILED:
                self.logger.error(f"Canary {namespace}/{name} failed: {state.message}")
                raise CanaryFailed(state.message or "Unknown error")

    async def promote_canary(self, name, namespace="default"):
        self.logger.info(f"Manually promoting canary {namespace}/{name}")
        await self.gateway.patch_annotation(name, namespace, PROMOTE_ANNOTATION, "true")
        return {"success": True, "promoted": True}

    async def rollback_canary(self, name, namespace="default"):
        self.logger.warning(f"Rolling back canary {namespace}/{name}")
        await self.gateway.patch_annotation(name, namespace, ROLLBACK_ANNOTATION, "true")
        return {"success": True, "rolled_back": True}

    async def run_canary_analysis(self, target):
        """Advisory score for the canary; never raises"""
        analysis = {"target": target.key, "timestamp": time.time()}
        try:
            metrics = await self._collect_metrics(target)
            webhooks = await self._run_webhooks(target)
        except RolloutError as e:
            self.logger.error(f"Canary analysis failed for {target}: {e}")
            analysis["overall"] = {"success": False, "score": 0}
            analysis["error"] = e.message
            return analysis

        score = calculate_canary_score(metrics, webhooks, self.score_weights)
        analysis["metrics"] = metrics
        analysis["webhooks"] = webhooks
        analysis["overall"] = {"success": score >= self.score_weights.pass_score, "score": score}
        self.logger.debug(f"Canary analysis for {target}: score={score}")
        return analysis

    async def _collect_metrics(self, target):
        if self.metrics is None:
            raise MetricsUnavailable(f"No metrics source configured for {target}")
        error_rate = await self.metrics.sample_error_rate(target)
        return {
            "success_rate": 100.0 - error_rate,
            "error_rate": error_rate,
            "response_time": await self.metrics.sample_response_time(target),
            "request_volume": await self.metrics.sample_throughput(target),
        }

    async def _run_webhooks(self, target):
        hooks = {h["name"]: h for h in (self.config.webhooks or default_canary_webhooks(target, self.config))}
        results = {}
        for key, hook_name in (("health_check", "health-check"), ("integration_tests", "integration-test")):
            hook = hooks.get(hook_name)
            results[key] = await self.webhook_checker.check(hook) if hook else {"success": False}
        return results
