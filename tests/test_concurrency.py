import asyncio
import pytest
from rollout_control.engine import PipelineOrchestrator
from rollout_control.failure import FailureInjector
from rollout_control.inmemory import InMemoryClusterGateway
from rollout_control.models import (DeploymentTarget, RollbackConfig, RollbackOutcome, Severity, Strategy, Violation,
                                    ViolationCategory)
from rollout_control.rollback import RollbackAutomationManager
from rollout_control.service import ControlPlane
from rollout_control.strategies import StrategyExecutor

FAST_BLUE_GREEN = {"settle_delay_s": 0, "observation_window_s": 0, "poll_interval_s": 0.01, "ready_timeout_s": 1.0}


class SlowExecutor(StrategyExecutor):
    strategy = Strategy.ROLLING

    def __init__(self):
        super().__init__(None)
        self.rollbacks = 0

    async def rollback(self, target):
        self.rollbacks += 1
        await asyncio.sleep(0.02)
        return RollbackOutcome(strategy=self.strategy)


def critical(target):
    return Violation(target=target, timestamp=0.0, category=ViolationCategory.HEALTH, kind="check_failure",
                     severity=Severity.CRITICAL)


class TestConcurrentPipelines:
    """Runs for different targets proceed independently."""

    @pytest.mark.asyncio
    async def test_two_targets_deploy_concurrently(self):
        gateway = InMemoryClusterGateway(FailureInjector(delay=0.005))
        gateway.seed_blue_green("checkout")
        gateway.seed_blue_green("payments")
        plane = ControlPlane(PipelineOrchestrator(gateway))
        options = {"blue_green": FAST_BLUE_GREEN, "enable_rollback_automation": False}

        results = await asyncio.gather(
            plane.deploy(DeploymentTarget("checkout"), "app:v2", "blue-green", options),
            plane.deploy(DeploymentTarget("payments"), "app:v2", "blue-green", options),
        )

        assert all(r.success for r in results)
        assert gateway.selector_of("checkout-service") == "green"
        assert gateway.selector_of("payments-service") == "green"
        assert len(plane.orchestrator.get_pipeline_history()) == 2

    @pytest.mark.asyncio
    async def test_same_service_in_two_namespaces(self):
        gateway = InMemoryClusterGateway()
        gateway.seed_blue_green("checkout", "staging")
        gateway.seed_blue_green("checkout", "production")
        plane = ControlPlane(PipelineOrchestrator(gateway))
        options = {"blue_green": FAST_BLUE_GREEN, "enable_rollback_automation": False}

        results = await asyncio.gather(
            plane.deploy(DeploymentTarget("checkout", "staging"), "app:v2", "blue-green", options),
            plane.deploy(DeploymentTarget("checkout", "production"), "app:v2", "blue-green", options),
        )

        assert [r.success for r in results] == [True, True]


class TestConcurrentViolations:
    """Violations for one monitor are serialized."""

    @pytest.mark.asyncio
    async def test_burst_of_violations_triggers_single_rollback(self):
        manager = RollbackAutomationManager(InMemoryClusterGateway(), clock=lambda: 0.0)
        executor = SlowExecutor()
        target = DeploymentTarget("checkout")
        monitor = manager.enable_automatic_rollback(target, RollbackConfig(check_families=[]), executor)

        await asyncio.gather(*(manager.record_violation(monitor, critical(target)) for _ in range(10)))

        assert executor.rollbacks == 1
        assert len(monitor.violations) == 10

    @pytest.mark.asyncio
    async def test_monitors_are_independent(self):
        manager = RollbackAutomationManager(InMemoryClusterGateway(), clock=lambda: 0.0)
        checkout, payments = DeploymentTarget("checkout"), DeploymentTarget("payments")
        checkout_executor, payments_executor = SlowExecutor(), SlowExecutor()
        config = RollbackConfig(check_families=[])
        checkout_monitor = manager.enable_automatic_rollback(checkout, config, checkout_executor)
        manager.enable_automatic_rollback(payments, config, payments_executor)

        for _ in range(2):
            await manager.record_violation(checkout_monitor, critical(checkout))

        assert checkout_executor.rollbacks == 1
        assert payments_executor.rollbacks == 0
        assert manager.get_monitoring_status(payments)["violations"] == 0
