import asyncio
import pytest
import requests
from rollout_control.canary import (CanaryExecutor, HttpWebhookChecker, PROMOTE_ANNOTATION, ROLLBACK_ANNOTATION,
                                    build_canary_resource, calculate_canary_score)
from rollout_control.errors import CanaryFailed, CanaryTimeout
from rollout_control.failure import FailureInjector
from rollout_control.inmemory import InMemoryClusterGateway, StaticMetricsSource
from rollout_control.models import CanaryConfig, CanaryScoreWeights, DeploymentTarget, RollbackConfig
from rollout_control.rollback import RollbackAutomationManager


class StubWebhookChecker:
    def __init__(self, results=None):
        self.results = results or {}
        self.checked = []

    async def check(self, webhook):
        self.checked.append(webhook["name"])
        return {"success": self.results.get(webhook["name"], True)}


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.error:
            raise self.error
        return self.response


def fast_config(**overrides):
    values = dict(max_weight=50, step_weight=10, iterations=5, poll_interval_s=0.01, timeout_s=2.0)
    values.update(overrides)
    return CanaryConfig(**values)


def canary_setup(metrics=None, checker=None):
    gateway = InMemoryClusterGateway()
    gateway.seed_rolling("payments", image="registry.local/payments:v1")
    executor = CanaryExecutor(gateway, metrics=metrics or StaticMetricsSource(),
                              webhook_checker=checker or StubWebhookChecker())
    return gateway, executor


class TestCanaryResource:
    """Progressive-delivery manifest."""

    def test_resource_carries_analysis_and_default_routing(self):
        resource = build_canary_resource(DeploymentTarget("payments", "prod"), fast_config())

        assert resource["kind"] == "Canary"
        assert resource["metadata"]["name"] == "payments-canary"
        assert resource["metadata"]["namespace"] == "prod"
        assert resource["spec"]["targetRef"]["name"] == "payments"
        assert resource["spec"]["service"]["gateways"] == ["payments-gateway"]
        assert resource["spec"]["service"]["hosts"] == ["payments.example.com"]
        analysis = resource["spec"]["analysis"]
        assert (analysis["maxWeight"], analysis["stepWeight"], analysis["iterations"]) == (50, 10, 5)
        assert [h["name"] for h in analysis["webhooks"]] == ["health-check", "integration-test"]
        assert analysis["webhooks"][0]["url"] == "http://payments-canary/health"

    def test_explicit_hosts_and_webhooks_are_used(self):
        hooks = [{"name": "load-test", "url": "http://loadtester/"}]
        config = fast_config(hosts=["pay.internal"], webhooks=hooks)

        resource = build_canary_resource(DeploymentTarget("payments"), config)

        assert resource["spec"]["service"]["hosts"] == ["pay.internal"]
        assert resource["spec"]["analysis"]["webhooks"] == hooks


class TestCanaryMonitoring:
    """Polling the controller for a verdict."""

    @pytest.mark.asyncio
    async def test_failed_canary_stops_polling_without_promotion(self):
        gateway, executor = canary_setup()
        gateway.script_canary("payments-canary", [
            "Progressing",
            "Progressing",
            {"phase": "Failed", "conditions": [{"message": "request-success-rate below threshold"}]},
        ])

        handle = await executor.start_canary_deployment(DeploymentTarget("payments"), "registry.local/payments:v2",
                                                        fast_config())
        with pytest.raises(CanaryFailed) as excinfo:
            await handle.monitoring

        assert excinfo.value.reason == "request-success-rate below threshold"
        assert gateway.count_calls("get_progressive_resource") == 3
        await asyncio.sleep(0.05)
        assert gateway.count_calls("get_progressive_resource") == 3
        annotations = gateway.progressive[("default", "payments-canary")]["metadata"].get("annotations") or {}
        assert PROMOTE_ANNOTATION not in annotations

    @pytest.mark.asyncio
    async def test_failure_without_message_reports_unknown_error(self):
        gateway, executor = canary_setup()
        gateway.script_canary("payments-canary", ["Failed"])

        with pytest.raises(CanaryFailed) as excinfo:
            await executor.deploy(DeploymentTarget("payments"), "registry.local/payments:v2", fast_config())

        assert excinfo.value.message == "Canary deployment failed: Unknown error"

    @pytest.mark.asyncio
    async def test_successful_canary_updates_image(self):
        gateway, executor = canary_setup()
        gateway.script_canary("payments-canary", ["Progressing", {"phase": "Succeeded", "canaryWeight": 50}])

        result = await executor.deploy(DeploymentTarget("payments"), "registry.local/payments:v2", fast_config())

        assert result["phase"] == "Succeeded"
        assert result["canary"] == "payments-canary"
        assert gateway.image_of("payments") == "registry.local/payments:v2"

    @pytest.mark.asyncio
    async def test_canary_without_verdict_times_out(self):
        gateway, executor = canary_setup()
        gateway.script_canary("payments-canary", ["Progressing"])

        with pytest.raises(CanaryTimeout):
            await executor.deploy(DeploymentTarget("payments"), "registry.local/payments:v2",
                                  fast_config(timeout_s=0.05))

    @pytest.mark.asyncio
    async def test_unknown_phase_keeps_polling(self):
        gateway, executor = canary_setup()
        gateway.script_canary("payments-canary", ["Initialized", "Waiting", "Succeeded"])

        result = await executor.deploy(DeploymentTarget("payments"), "registry.local/payments:v2", fast_config())

        assert result["phase"] == "Succeeded"
        assert gateway.count_calls("get_progressive_resource") == 3


class TestCanaryControl:
    """Manual promotion and rollback."""

    @pytest.mark.asyncio
    async def test_promote_and_rollback_set_annotations(self):
        gateway, executor = canary_setup()
        gateway.script_canary("payments-canary", ["Succeeded"])
        await executor.deploy(DeploymentTarget("payments"), "registry.local/payments:v2", fast_config())

        await executor.promote_canary("payments-canary")
        await executor.rollback_canary("payments-canary")

        annotations = gateway.progressive[("default", "payments-canary")]["metadata"]["annotations"]
        assert annotations[PROMOTE_ANNOTATION] == "true"
        assert annotations[ROLLBACK_ANNOTATION] == "true"

    @pytest.mark.asyncio
    async def test_rollback_reports_current_image(self):
        gateway, executor = canary_setup()
        gateway.script_canary("payments-canary", ["Succeeded"])
        target = DeploymentTarget("payments")
        await executor.deploy(target, "registry.local/payments:v2", fast_config())

        outcome = await executor.rollback(target)

        assert outcome.from_version == "registry.local/payments:v2"
        assert outcome.detail["annotation"] == ROLLBACK_ANNOTATION

    @pytest.mark.asyncio
    async def test_cleanup_without_resource_is_noop(self):
        gateway, executor = canary_setup()

        await executor.cleanup(DeploymentTarget("payments"))

        assert gateway.count_calls("patch_annotation") == 0

    @pytest.mark.asyncio
    async def test_live_workload_is_target_before_promotion(self):
        _, executor = canary_setup()

        assert await executor.live_workload(DeploymentTarget("payments")) == "payments"

    @pytest.mark.asyncio
    async def test_live_workload_is_primary_after_promotion(self):
        gateway, executor = canary_setup()
        gateway.add_workload("payments-primary", image="registry.local/payments:v2", labels={"app": "payments"})
        await gateway.scale_workload("payments", "default", 0)

        assert await executor.live_workload(DeploymentTarget("payments")) == "payments-primary"

    @pytest.mark.asyncio
    async def test_health_ticks_on_promoted_canary_do_not_roll_back(self):
        gateway, executor = canary_setup()
        gateway.add_workload("payments-primary", image="registry.local/payments:v2", labels={"app": "payments"})
        await gateway.scale_workload("payments", "default", 0)
        manager = RollbackAutomationManager(gateway)
        monitor = manager.enable_automatic_rollback(DeploymentTarget("payments"), RollbackConfig(check_families=[]),
                                                    executor)

        for _ in range(3):
            sample = await manager.check_health(monitor)

        assert sample.ready_replicas == 3
        assert monitor.violations == []
        assert manager.history == []
        await manager.shutdown()


class TestCanaryScore:
    """Weighted analysis score."""

    def test_perfect_canary_scores_100(self):
        score = calculate_canary_score(
            {"success_rate": 99.5, "error_rate": 0.5, "response_time": 245},
            {"health_check": {"success": True}, "integration_tests": {"success": True}},
        )
        assert score == 100

    def test_partial_credit(self):
        score = calculate_canary_score(
            {"success_rate": 96, "error_rate": 3, "response_time": 800},
            {"health_check": {"success": True}, "integration_tests": {"success": False}},
        )
        # 20 + 10 + 10 + 15 + 0
        assert score == 55

    def test_poor_metrics_only_keep_success_floor(self):
        score = calculate_canary_score(
            {"success_rate": 80, "error_rate": 12, "response_time": 3000},
            {},
        )
        assert score == 10

    def test_custom_weights_are_normalized(self):
        weights = CanaryScoreWeights(success_rate=10, error_rate=10, latency=10, health_check=10,
                                     integration_tests=10)
        score = calculate_canary_score(
            {"success_rate": 99.9, "error_rate": 0.1, "response_time": 100},
            {"health_check": {"success": True}, "integration_tests": {"success": False}},
            weights,
        )
        assert score == 80


class TestCanaryAnalysis:
    """Advisory analysis against metrics and webhooks."""

    @pytest.mark.asyncio
    async def test_healthy_metrics_pass(self):
        checker = StubWebhookChecker()
        _, executor = canary_setup(checker=checker)

        analysis = await executor.run_canary_analysis(DeploymentTarget("payments"))

        assert analysis["overall"] == {"success": True, "score": 100}
        assert checker.checked == ["health-check", "integration-test"]

    @pytest.mark.asyncio
    async def test_failing_integration_tests_drop_below_pass_score(self):
        checker = StubWebhookChecker({"integration-test": False})
        _, executor = canary_setup(metrics=StaticMetricsSource(error_rate_pct=3.0), checker=checker)

        analysis = await executor.run_canary_analysis(DeploymentTarget("payments"))

        assert analysis["overall"]["success"] is False
        assert analysis["overall"]["score"] == 65

    @pytest.mark.asyncio
    async def test_metrics_failure_yields_zero_score(self):
        metrics = StaticMetricsSource(failure_injector=FailureInjector({"sample_error_rate": 1}))
        _, executor = canary_setup(metrics=metrics)

        analysis = await executor.run_canary_analysis(DeploymentTarget("payments"))

        assert analysis["overall"] == {"success": False, "score": 0}
        assert "sample_error_rate" in analysis["error"]


class TestHttpWebhookChecker:
    """Webhook calls over HTTP."""

    @pytest.mark.asyncio
    async def test_successful_post(self):
        session = FakeSession()
        checker = HttpWebhookChecker(session=session, timeout_s=5)

        result = await checker.check({"name": "health-check", "url": "http://payments-canary/health"})

        assert result["success"] is True
        assert result["status_code"] == 200
        url, body, timeout = session.posts[0]
        assert url == "http://payments-canary/health"
        assert body["name"] == "health-check"
        assert timeout == 5

    @pytest.mark.asyncio
    async def test_connection_error_is_a_failed_check(self):
        checker = HttpWebhookChecker(session=FakeSession(error=requests.ConnectionError("refused")))

        result = await checker.check({"name": "integration-test", "url": "http://test-runner/"})

        assert result["success"] is False
        assert "refused" in result["error"]

    @pytest.mark.asyncio
    async def test_http_error_status_is_a_failed_check(self):
        checker = HttpWebhookChecker(session=FakeSession(response=FakeResponse(500)))

        result = await checker.check({"name": "integration-test", "url": "http://test-runner/"})

        assert result["success"] is False
