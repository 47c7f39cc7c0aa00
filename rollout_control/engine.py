import time
from collections import Counter
from dataclasses import asdict

from .bluegreen import BlueGreenExecutor, workload_name
from .canary import CanaryExecutor, canary_name
from .errors import (GatewayError, NotFound, RolloutError, RunInProgress, UnhealthyTarget, UnknownStrategy,
                     ValidationFailed)
from .logger import get_logger
from .models import (BuildResult, OptimizationReport, PipelineConfig, Priority, PromotionResult, Recommendation,
                     RollbackRecord, RunStatus, StageResult, StageStatus, Strategy, StrategyRun)
from .rollback import RollbackAutomationManager
from .strategies import RollingExecutor, container_image, replica_counts, run_step, step_summary

HISTORY_LIMIT = 100
ROLLBACK_HISTORY_LIMIT = 50
PRIORITY_ORDER = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


def default_executors(gateway, metrics=None, webhook_checker=None):
    return {
        Strategy.BLUE_GREEN: BlueGreenExecutor(gateway),
        Strategy.CANARY: CanaryExecutor(gateway, metrics=metrics, webhook_checker=webhook_checker),
        Strategy.ROLLING: RollingExecutor(gateway),
    }


def _average(values):
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def cache_recommendation(hit_ratio):
    return Recommendation(
        type="BUILD_CACHE_OPTIMIZATION",
        priority=Priority.HIGH,
        description="Build cache hit ratio is low, consider optimizing Dockerfile layer order",
        current_value=f"{hit_ratio:.0f}%",
        target_value="80%+",
        suggestions=["Order Dockerfile layers from least to most frequently changed",
                     "Copy dependency manifests before application sources"],
    )


def build_time_recommendation(duration_s):
    return Recommendation(
        type="BUILD_PERFORMANCE",
        priority=Priority.MEDIUM,
        description="Build time is longer than recommended threshold",
        current_value=f"{duration_s:.0f}s",
        target_value="<600s",
        suggestions=["Implement multi-stage builds", "Optimize dependency installation", "Use smaller base images"],
    )


def strategy_recommendation():
    return Recommendation(
        type="DEPLOYMENT_STRATEGY",
        priority=Priority.MEDIUM,
        description="Consider using blue-green or canary deployment for zero-downtime deployments",
        current_value=Strategy.ROLLING.value,
        target_value="blue-green or canary",
        suggestions=["Zero downtime", "Easy rollback", "Better risk management"],
    )


def sort_recommendations(recommendations):
    return sorted(recommendations, key=lambda r: PRIORITY_ORDER.get(r.priority, len(PRIORITY_ORDER)))


class PipelineOrchestrator:
    def __init__(self, gateway, builder=None, rollback_manager=None, executors=None, metrics=None, notifier=None):
        self.gateway = gateway
        self.builder = builder
        self.rollback_manager = rollback_manager or RollbackAutomationManager(gateway, metrics, notifier)
        self.executors = executors or default_executors(gateway, metrics)
        self.pipeline_history = []
        self.rollback_history = []
        self._active_runs = {}
        self.logger = get_logger("engine")

    def select_executor(self, strategy):
        try:
            strategy = Strategy(strategy)
        except ValueError:
            raise UnknownStrategy(f"Unknown deployment strategy: {strategy}")
        executor = self.executors.get(strategy)
        if executor is None:
            raise UnknownStrategy(f"No executor registered for {strategy.value}")
        return strategy, executor

    def is_running(self, target):
        return target in self._active_runs

    async def execute_complete_pipeline(self, config):
        """Build, deploy and arm rollback monitoring for one target"""
        target = config.target
        if target in self._active_runs:
            raise RunInProgress(f"Pipeline {self._active_runs[target].run_id} is already running for {target}")
        strategy, executor = self.select_executor(config.deployment_strategy)

        run = StrategyRun(target=target, strategy=strategy, artifact_ref=config.artifact_ref)
        self._active_runs[target] = run
        self.logger.info(f"Starting pipeline {run.run_id} for {target} using {strategy.value}")
        suspended = self.rollback_manager.monitors.get(target)
        if suspended is not None:
            self.logger.info(f"Suspending rollback monitor for {target} while pipeline {run.run_id} runs")
            self.rollback_manager.disable_automatic_rollback(target)
        stage = None
        try:
            stage = run.start_stage("build")
            run.build = await self.execute_build_stage(config)
            run.artifact_ref = run.build.artifact_ref
            stage.complete(asdict(run.build))

            stage = run.start_stage("deploy")
            stage.complete(await self.execute_deployment_stage(config, executor, run.artifact_ref))

            if config.enable_rollback_automation:
                stage = run.start_stage("monitoring")
                stage.complete(self.enable_monitoring_stage(config, executor).summary())
        except Exception as e:
            if stage is not None and stage.status == StageStatus.STARTED:
                stage.fail(e)
            self.logger.error(f"Pipeline {run.run_id} for {target} failed during {stage.name if stage else 'setup'}: {e}")
            if stage is not None and stage.name == "deploy":
                await self._cleanup_after_failure(executor, target)
            run.finish(RunStatus.ROLLED_BACK if getattr(e, "rolled_back", False) else RunStatus.FAILED, e)
            if isinstance(e, RolloutError):
                e.run = run
            raise
        else:
            run.finish(RunStatus.SUCCEEDED)
            self.logger.info(f"Pipeline {run.run_id} for {target} completed in {run.duration_s:.1f}s")
            return run
        finally:
            if run.status == RunStatus.RUNNING:
                # Cancelled mid-stage
                if stage is not None and stage.status == StageStatus.STARTED:
                    stage.fail("cancelled")
                run.finish(RunStatus.FAILED)
                run.error = "cancelled"
            if suspended is not None and target not in self.rollback_manager.monitors:
                self.logger.info(f"Restoring rollback monitor for {target}")
                self.rollback_manager.enable_automatic_rollback(target, suspended.config, suspended.executor)
            self._active_runs.pop(target, None)
            self.store_run(run)

    async def _cleanup_after_failure(self, executor, target):
        try:
            await executor.cleanup(target)
        except Exception as e:
            self.logger.error(f"Cleanup after failed deploy of {target} failed: {e}")

    async def execute_build_stage(self, config):
        target = config.target
        if config.artifact_ref and (config.skip_build or self.builder is None):
            self.logger.info(f"Skipping build for {target}, using {config.artifact_ref}")
            return BuildResult(artifact_ref=config.artifact_ref, skipped=True)
        if self.builder is None:
            raise RolloutError(f"No builder configured and no artifact supplied for {target}")

        svc = target.service_name
        spec = {
            "service_name": svc,
            "version": config.version,
            "dockerfile": config.dockerfile or f"Dockerfile.{svc}",
            "context": config.build_context or f"./{svc}",
            "target": config.build_target,
            "tag": f"{svc}:{config.version or 'latest'}",
            "options": dict(config.build_options),
        }
        result = await self.builder.build(target, spec)
        if isinstance(result, str):
            result = BuildResult(artifact_ref=result)
        self.logger.info(f"Built {result.artifact_ref} for {target} in {result.duration_s:.1f}s "
                         f"(cache hit ratio {result.cache_hit_ratio:.0f}%)")
        return result

    async def execute_deployment_stage(self, config, executor, artifact_ref):
        return await executor.deploy(config.target, artifact_ref, config.options_for(executor.strategy))

    def enable_monitoring_stage(self, config, executor):
        return self.rollback_manager.enable_automatic_rollback(config.target, config.rollback, executor)

    def store_run(self, run):
        self.pipeline_history.insert(0, run)
        del self.pipeline_history[HISTORY_LIMIT:]

    def _record_rollback(self, record):
        self.rollback_history.insert(0, record)
        del self.rollback_history[ROLLBACK_HISTORY_LIMIT:]

    async def detect_deployment_strategy(self, target):
        """Strategy inferred from the objects present; cluster errors other than NotFound propagate"""
        for color in ("blue", "green"):
            if await self.gateway.workload_exists(workload_name(target, color), target.namespace):
                return Strategy.BLUE_GREEN
        if await self.gateway.progressive_resource_exists(canary_name(target), target.namespace):
            return Strategy.CANARY
        return Strategy.ROLLING

    async def rollback_to_previous_version(self, target, method="auto-detect"):
        """Manual rollback; raises when the executor fails"""
        if method in (None, "auto-detect"):
            strategy = await self.detect_deployment_strategy(target)
        else:
            strategy = method
        strategy, executor = self.select_executor(strategy)
        self.logger.info(f"Rolling back {target} to its previous version ({strategy.value})")

        record = RollbackRecord(target=target, timestamp=time.time(), reason="manual", strategy=strategy,
                                automatic=False)
        try:
            outcome = await executor.rollback(target)
        except Exception as e:
            record.error = str(e)
            self._record_rollback(record)
            self.logger.error(f"Rollback failed for {target}: {e}")
            raise
        record.success = True
        record.from_version = outcome.from_version
        record.to_version = outcome.to_version
        self._record_rollback(record)
        self.logger.info(f"Rollback completed for {target}")
        return record

    async def check_environment_health(self, target):
        strategy = await self.detect_deployment_strategy(target)
        executor = self.executors.get(strategy) or RollingExecutor(self.gateway)
        name = await executor.live_workload(target)
        workload = await self.gateway.get_workload(name, target.namespace)
        ready, desired = replica_counts(workload)
        return {
            "healthy": desired > 0 and ready >= desired,
            "strategy": strategy.value,
            "workload": name,
            "image": container_image(workload),
            "ready_replicas": ready,
            "desired_replicas": desired,
        }

    async def validate_environment_promotion(self, source, destination):
        checks = []
        errors = []
        try:
            health = await self.check_environment_health(source)
            checks.append({"name": "source_environment_health", "success": health["healthy"]})
            if not health["healthy"]:
                errors.append("Source environment is not healthy")
        except GatewayError as e:
            errors.append(f"Source environment check failed: {e}")

        try:
            await self.gateway.get_namespace(destination.namespace)
            checks.append({"name": "target_environment_readiness", "success": True})
        except NotFound:
            checks.append({"name": "target_environment_readiness", "success": False})
            errors.append("Target environment is not ready")
        except GatewayError as e:
            errors.append(f"Target environment check failed: {e}")

        if self.is_running(destination):
            errors.append(f"A pipeline run is already active for {destination}")

        if errors:
            raise ValidationFailed(errors)
        return {"success": True, "checks": checks}

    async def extract_environment_config(self, source):
        health = await self.check_environment_health(source)
        if not health["image"]:
            raise ValidationFailed([f"No container image found on {source.namespace}/{health['workload']}"])
        return {"artifact_ref": health["image"], "workload": health["workload"], "strategy": health["strategy"]}

    async def verify_environment_promotion(self, destination):
        health = await self.check_environment_health(destination)
        if not health["healthy"]:
            raise UnhealthyTarget(f"Promoted deployment in {destination.namespace} is not healthy",
                                  [f"{health['ready_replicas']}/{health['desired_replicas']} replicas ready"])
        return {"success": True, "checks": [{"name": "health_check", "success": True}]}

    async def promote_to_environment(self, target, source_env, target_env, options=None):
        """Redeploy the artifact running in source_env into target_env"""
        started = time.time()
        source = target.in_namespace(source_env)
        destination = target.in_namespace(target_env)
        stages = []
        self.logger.info(f"Promoting {target.service_name} from {source_env} to {target_env}")

        await run_step(stages, "validation", self.validate_environment_promotion(source, destination))
        source_config = await run_step(stages, "config_extraction", self.extract_environment_config(source))

        values = {"deployment_strategy": Strategy.BLUE_GREEN.value, "enable_rollback_automation": True}
        values.update(options or {})
        values.update(target=destination, artifact_ref=source_config["artifact_ref"], skip_build=True)
        config = PipelineConfig.from_dict(values)

        stage = StageResult(name="deployment")
        stages.append(stage)
        try:
            run = await self.execute_complete_pipeline(config)
        except Exception as e:
            stage.fail(e)
            raise
        stage.complete({"run_id": run.run_id, "status": run.status.value})

        await run_step(stages, "verification", self.verify_environment_promotion(destination))
        self.logger.info(f"Promotion of {target.service_name} to {target_env} completed")
        return PromotionResult(
            success=True,
            source=source,
            destination=destination,
            duration_s=time.time() - started,
            stages=[step_summary(s) for s in stages],
            run=run,
        )

    def optimize_pipeline(self, target):
        """Recommendations from the recorded build and deployment history of one service"""
        started = time.time()
        runs = self.get_pipeline_history(target.service_name)
        builds = [r.build for r in runs if r.build is not None and not r.build.skipped]
        analyses = [
            self._analyze_builds(builds),
            self._analyze_cache(builds),
            self._analyze_deployments(runs),
        ]
        recommendations = sort_recommendations(r for analysis in analyses for r in analysis["recommendations"])
        self.logger.info(f"Pipeline optimization for {target.service_name}: {len(recommendations)} recommendations")
        return OptimizationReport(
            success=True,
            target=target,
            duration_s=time.time() - started,
            analyses=analyses,
            recommendations=recommendations,
            summary={
                "total_recommendations": len(recommendations),
                "categories": [a["type"] for a in analyses],
                "runs_analyzed": len(runs),
                "builds_analyzed": len(builds),
            },
        )

    def _analyze_builds(self, builds):
        analysis = {"type": "build_performance", "metrics": {}, "recommendations": []}
        if not builds:
            return analysis
        avg_duration = _average(b.duration_s for b in builds)
        avg_hit_ratio = _average(b.cache_hit_ratio for b in builds)
        analysis["metrics"] = {"average_duration_s": avg_duration, "average_cache_hit_ratio": avg_hit_ratio}
        if avg_hit_ratio < 50:
            analysis["recommendations"].append(cache_recommendation(avg_hit_ratio))
        if avg_duration > 600:
            analysis["recommendations"].append(build_time_recommendation(avg_duration))
        return analysis

    def _analyze_cache(self, builds):
        analysis = {"type": "cache_performance", "metrics": {}, "recommendations": []}
        if not builds:
            return analysis
        avg_hit_ratio = _average(b.cache_hit_ratio for b in builds)
        analysis["metrics"] = {"average_cache_hit_ratio": avg_hit_ratio}
        if avg_hit_ratio < 60:
            analysis["recommendations"].append(Recommendation(
                type="CACHE_WARMING",
                priority=Priority.MEDIUM,
                description="Cache hits are below target, warm the cache before builds",
                current_value=f"{avg_hit_ratio:.0f}%",
                target_value="60%+",
                suggestions=["Implement cache warming strategies", "Optimize cache key generation"],
            ))
        return analysis

    def _analyze_deployments(self, runs):
        analysis = {"type": "deployment_performance", "metrics": {}, "recommendations": []}
        if not runs:
            return analysis
        failure_rate = sum(1 for r in runs if not r.success) / len(runs)
        avg_duration = _average(r.duration_s for r in runs)
        most_used = Counter(r.strategy for r in runs).most_common(1)[0][0]
        analysis["metrics"] = {
            "failure_rate_pct": failure_rate * 100.0,
            "average_duration_s": avg_duration,
            "most_used_strategy": most_used.value,
        }
        if failure_rate > 0.1:
            analysis["recommendations"].append(Recommendation(
                type="DEPLOYMENT_RELIABILITY",
                priority=Priority.HIGH,
                description="Deployment failure rate is above 10%",
                current_value=f"{failure_rate * 100:.0f}%",
                target_value="<10%",
                suggestions=["Implement better pre-deployment testing",
                             "Consider canary deployments for safer rollouts"],
            ))
        if avg_duration > 1800:
            analysis["recommendations"].append(Recommendation(
                type="DEPLOYMENT_DURATION",
                priority=Priority.MEDIUM,
                description="Deployments take longer than 30 minutes on average",
                current_value=f"{avg_duration:.0f}s",
                target_value="<1800s",
                suggestions=["Optimize deployment strategy for faster rollouts"],
            ))
        if most_used == Strategy.ROLLING:
            analysis["recommendations"].append(strategy_recommendation())
        return analysis

    def generate_pipeline_report(self, run):
        build = run.build
        hit_ratio = build.cache_hit_ratio if build else 0.0
        build_time = build.duration_s if build else 0.0
        time_saved = build_time * (hit_ratio / 100) * 0.7
        recommendations = []
        if build is not None and not build.skipped:
            if hit_ratio < 50:
                recommendations.append(cache_recommendation(hit_ratio))
            if build_time > 600:
                recommendations.append(build_time_recommendation(build_time))
        if run.strategy == Strategy.ROLLING:
            recommendations.append(strategy_recommendation())

        if run.success:
            next_steps = ["Monitor application performance and health metrics",
                          "Set up automated rollback triggers",
                          "Plan next deployment cycle optimizations"]
        else:
            next_steps = ["Review failed stages and error logs",
                          "Fix identified issues before retry",
                          "Consider rollback if production is affected"]

        artifacts = []
        if run.artifact_ref:
            artifacts.append({"type": "container_image", "name": run.artifact_ref, "stage": "build"})

        return {
            "generated_at": time.time(),
            "run_id": run.run_id,
            "target": run.target.key,
            "status": run.status.value,
            "summary": {
                "total_stages": len(run.stages),
                "successful_stages": sum(1 for s in run.stages if s.status == StageStatus.COMPLETED),
                "duration_s": run.duration_s,
                "deployment_strategy": run.strategy.value,
                "build_cache_hit_ratio": hit_ratio,
                "estimated_savings": {
                    "time_saved_s": round(time_saved),
                    "cost_saved": round(time_saved * 0.002, 2),
                },
            },
            "stages": [step_summary(s) for s in run.stages],
            "recommendations": [asdict(r) for r in sort_recommendations(recommendations)],
            "next_steps": next_steps,
            "artifacts": artifacts,
            "error": run.error,
        }

    def get_pipeline_history(self, service_name=None, limit=None):
        history = self.pipeline_history
        if service_name:
            history = [r for r in history if r.target.service_name == service_name]
        return list(history[:limit] if limit else history)

    def get_rollback_history(self, service_name=None, limit=ROLLBACK_HISTORY_LIMIT):
        """Manual and automatic rollbacks, most recent first"""
        history = sorted(self.rollback_history + self.rollback_manager.history,
                         key=lambda r: r.timestamp, reverse=True)
        if service_name:
            history = [r for r in history if r.target.service_name == service_name]
        return history[:limit]

    def get_pipeline_statistics(self):
        runs = self.pipeline_history
        stats = {
            "total_pipelines": len(runs),
            "successful_pipelines": sum(1 for r in runs if r.success),
            "success_rate": 0.0,
            "average_duration_s": 0.0,
            "most_used_strategy": "unknown",
            "cache_efficiency": 0.0,
        }
        if runs:
            stats["success_rate"] = stats["successful_pipelines"] / len(runs) * 100.0
            stats["average_duration_s"] = _average(r.duration_s for r in runs)
            stats["most_used_strategy"] = Counter(r.strategy.value for r in runs).most_common(1)[0][0]
            ratios = [r.build.cache_hit_ratio for r in runs if r.build and r.build.cache_hit_ratio > 0]
            stats["cache_efficiency"] = _average(ratios)
        return stats

    def export_history(self):
        return {
            "pipelines": [r.to_dict() for r in self.pipeline_history],
            "rollbacks": [r.to_dict() for r in self.rollback_history + self.rollback_manager.history],
        }

    def import_history(self, data):
        self.pipeline_history = [StrategyRun.from_dict(r) for r in data.get("pipelines", [])][:HISTORY_LIMIT]
        records = [RollbackRecord.from_dict(r) for r in data.get("rollbacks", [])]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        self.rollback_history = [r for r in records if not r.automatic][:ROLLBACK_HISTORY_LIMIT]
        self.rollback_manager.history = [r for r in records if r.automatic][:ROLLBACK_HISTORY_LIMIT]
