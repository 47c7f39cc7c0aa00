import time

from .errors import error_kind
from .logger import get_logger
from .models import (OperationResult, OptimizationReport, PipelineConfig, PipelineResult, PromotionResult,
                     RollbackConfig, RollbackResult, StatusReport, Strategy)


def _failure(result_cls, started, error, **values):
    return result_cls(
        success=False,
        duration_s=time.time() - started,
        error=str(error) or type(error).__name__,
        error_kind=error_kind(error),
        **values,
    )


class ControlPlane:
    """Operations exposed to the CLI; every call returns a result instead of raising"""

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator
        self.rollback_manager = orchestrator.rollback_manager
        self.logger = get_logger("service")

    async def deploy(self, target, artifact_ref=None, strategy=Strategy.BLUE_GREEN.value, options=None):
        started = time.time()
        try:
            values = dict(options or {})
            values.update(target=target, deployment_strategy=strategy)
            if artifact_ref:
                values.update(artifact_ref=artifact_ref, skip_build=True)
            run = await self.orchestrator.execute_complete_pipeline(PipelineConfig.from_dict(values))
        except Exception as e:
            self.logger.error(f"Deploy of {target} failed: {e}")
            return _failure(PipelineResult, started, e, run=getattr(e, "run", None))
        return PipelineResult(success=True, duration_s=time.time() - started, run=run)

    async def rollback(self, target, method="auto-detect"):
        started = time.time()
        try:
            record = await self.orchestrator.rollback_to_previous_version(target, method)
        except Exception as e:
            self.logger.error(f"Rollback of {target} failed: {e}")
            return _failure(RollbackResult, started, e, method=method)
        return RollbackResult(
            success=record.success,
            duration_s=time.time() - started,
            strategy=record.strategy,
            method=method,
            record=record,
        )

    async def promote(self, target, source_env, target_env, options=None):
        started = time.time()
        try:
            return await self.orchestrator.promote_to_environment(target, source_env, target_env, options)
        except Exception as e:
            self.logger.error(f"Promotion of {target.service_name} from {source_env} to {target_env} failed: {e}")
            return _failure(PromotionResult, started, e,
                            source=target.in_namespace(source_env),
                            destination=target.in_namespace(target_env),
                            run=getattr(e, "run", None))

    async def optimize(self, target):
        started = time.time()
        try:
            return self.orchestrator.optimize_pipeline(target)
        except Exception as e:
            self.logger.error(f"Pipeline optimization for {target} failed: {e}")
            return _failure(OptimizationReport, started, e, target=target)

    async def status(self, target=None, limit=10):
        started = time.time()
        try:
            service_name = target.service_name if target else None
            runs = self.orchestrator.get_pipeline_history(service_name, limit)
            monitors = self.rollback_manager.get_active_monitors()
            if target:
                monitors = [m for m in monitors if m["target"] == target.key]
            return StatusReport(
                success=True,
                duration_s=time.time() - started,
                statistics=self.orchestrator.get_pipeline_statistics(),
                recent_runs=[r.to_dict() for r in runs],
                monitors=monitors,
            )
        except Exception as e:
            self.logger.error(f"Status lookup failed: {e}")
            return _failure(StatusReport, started, e)

    async def enable_auto_rollback(self, target, config=None, strategy=None):
        started = time.time()
        try:
            if isinstance(config, dict):
                config = RollbackConfig.from_dict(config)
            if strategy is None:
                strategy = await self.orchestrator.detect_deployment_strategy(target)
            _, executor = self.orchestrator.select_executor(strategy)
            monitor = self.rollback_manager.enable_automatic_rollback(target, config, executor)
        except Exception as e:
            self.logger.error(f"Enabling automatic rollback for {target} failed: {e}")
            return _failure(OperationResult, started, e)
        return OperationResult(success=True, duration_s=time.time() - started, detail=monitor.summary())

    async def disable_auto_rollback(self, target):
        started = time.time()
        try:
            disabled = self.rollback_manager.disable_automatic_rollback(target)
        except Exception as e:
            return _failure(OperationResult, started, e)
        return OperationResult(success=True, duration_s=time.time() - started,
                               detail={"target": target.key, "disabled": disabled})
