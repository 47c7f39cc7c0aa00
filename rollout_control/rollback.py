import asyncio
import time
from dataclasses import dataclass, field

from .errors import GatewayError, RollbackExecutionFailed, RolloutError
from .logger import get_logger
from .models import (Alert, HealthSample, PerformanceSample, RollbackConfig, RollbackRecord, Severity, Violation,
                     ViolationCategory)
from .strategies import RollingExecutor, replica_counts

VIOLATION_RETENTION_S = 3600
TRIGGER_WINDOW_S = 300
RATE_LIMIT_WINDOW_S = 3600
RECORD_VIOLATIONS = 10
HISTORY_LIMIT = 50
ALERT_LIMIT = 100


def evaluate_trigger_rules(violations, now, window_s=TRIGGER_WINDOW_S):
    """Name of the first rollback rule matched by the recent violations, or None"""
    recent = [v for v in violations if now - v.timestamp < window_s]

    critical_health = [v for v in recent
                       if v.category == ViolationCategory.HEALTH and v.severity == Severity.CRITICAL]
    if len(critical_health) >= 2:
        return "critical_health_failures"

    performance = [v for v in recent if v.category == ViolationCategory.PERFORMANCE]
    if len(performance) >= 3:
        return "performance_degradation"

    if len(recent) >= 5:
        return "multiple_violations"
    return None


@dataclass
class Monitor:
    """Supervision state for one target"""
    target: object
    config: RollbackConfig
    executor: object
    enabled_at: float
    violations: list = field(default_factory=list)
    last_rollback_at: float = None  # Carried over from earlier monitors of the same target
    rollback_count: int = 0
    active: bool = True
    tasks: list = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def summary(self):
        return {
            "target": self.target.key,
            "strategy": self.executor.strategy.value if self.executor.strategy else None,
            "enabled_at": self.enabled_at,
            "active": self.active,
            "check_families": list(self.config.check_families),
            "violations": len(self.violations),
            "rollback_count": self.rollback_count,
            "last_rollback_at": self.last_rollback_at,
        }


class RollbackAutomationManager:
    def __init__(self, gateway, metrics=None, notifier=None, on_rollback_executed=None, on_alert=None,
                 clock=time.time):
        self.gateway = gateway
        self.metrics = metrics
        self.notifier = notifier
        self.on_rollback_executed = on_rollback_executed
        self.on_alert = on_alert
        self.clock = clock
        self.monitors = {}
        self.history = []
        self.rollback_attempts = {}  # Target -> attempt timestamps, kept across monitor replacement
        self.alerts = []
        self._notifications = set()
        self.logger = get_logger("rollback")

    def enable_automatic_rollback(self, target, config=None, executor=None):
        config = config or RollbackConfig()
        if target in self.monitors:
            self.logger.info(f"Replacing existing rollback monitor for {target}")
            self.disable_automatic_rollback(target)

        attempts = self.rollback_attempts.get(target)
        monitor = Monitor(
            target=target,
            config=config,
            executor=executor or RollingExecutor(self.gateway),
            enabled_at=self.clock(),
            last_rollback_at=attempts[-1] if attempts else None,
        )
        checks = {
            "health": (config.health_interval_s, self.check_health),
            "performance": (config.performance_interval_s, self.check_performance),
            "business": (config.business_interval_s, self.check_business_metrics),
        }
        for family in config.check_families:
            if family not in checks:
                self.logger.warning(f"Unknown check family {family} for {target}, ignoring")
                continue
            interval, check = checks[family]
            task = asyncio.ensure_future(self._run_checks(monitor, family, interval, check))
            monitor.tasks.append(task)

        self.monitors[target] = monitor
        self.logger.info(f"Automatic rollback enabled for {target} ({', '.join(config.check_families) or 'no checks'})")
        return monitor

    def disable_automatic_rollback(self, target):
        monitor = self.monitors.pop(target, None)
        if monitor is None:
            return False
        monitor.active = False
        for task in monitor.tasks:
            task.cancel()
        self.logger.info(f"Automatic rollback disabled for {target}")
        return True

    async def _run_checks(self, monitor, family, interval, check):
        while monitor.active:
            await asyncio.sleep(interval)
            try:
                # A tick that already started finishes even if the monitor is disabled meanwhile
                await asyncio.shield(check(monitor))
            except Exception as e:
                self.logger.error(f"{family} check failed for {monitor.target}: {e}")

    async def check_health(self, monitor):
        target = monitor.target
        config = monitor.config
        try:
            name = await monitor.executor.live_workload(target)
            workload = await self.gateway.get_workload(name, target.namespace)
        except GatewayError as e:
            await self.record_violation(monitor, Violation(
                target=target,
                timestamp=self.clock(),
                category=ViolationCategory.HEALTH,
                kind="check_failure",
                severity=Severity.CRITICAL,
                detail=str(e),
            ))
            return None

        ready, desired = replica_counts(workload)
        sample = HealthSample(
            target=target,
            timestamp=self.clock(),
            total_replicas=desired,
            ready_replicas=ready,
            available_replicas=(workload.get("status") or {}).get("availableReplicas") or 0,
        )
        self.logger.debug(f"Health of {target}: readiness {sample.readiness_pct:.1f}%, "
                          f"availability {sample.availability_pct:.1f}%")

        if sample.readiness_pct < config.readiness_threshold:
            await self.record_violation(monitor, Violation(
                target=target,
                timestamp=sample.timestamp,
                category=ViolationCategory.HEALTH,
                kind="readiness",
                severity=Severity.HIGH,
                actual_value=sample.readiness_pct,
                threshold=config.readiness_threshold,
            ))
        if sample.availability_pct < config.liveness_threshold:
            await self.record_violation(monitor, Violation(
                target=target,
                timestamp=sample.timestamp,
                category=ViolationCategory.HEALTH,
                kind="availability",
                severity=Severity.HIGH,
                actual_value=sample.availability_pct,
                threshold=config.liveness_threshold,
            ))
        return sample

    async def check_performance(self, monitor):
        target = monitor.target
        if self.metrics is None:
            self.logger.debug(f"No metrics source, skipping performance check for {target}")
            return None
        try:
            sample = PerformanceSample(
                target=target,
                timestamp=self.clock(),
                response_time_ms=await self.metrics.sample_response_time(target),
                error_rate_pct=await self.metrics.sample_error_rate(target),
                throughput=await self.metrics.sample_throughput(target),
            )
        except RolloutError as e:
            self.logger.error(f"Performance metrics unavailable for {target}: {e}")
            return None

        values = sample.as_metrics()
        for metric in monitor.config.performance_metrics:
            value = values.get(metric.name)
            if value is not None and metric.is_violated(value):
                await self.record_violation(monitor, Violation(
                    target=target,
                    timestamp=sample.timestamp,
                    category=ViolationCategory.PERFORMANCE,
                    kind=metric.name,
                    severity=Severity.MEDIUM,
                    actual_value=value,
                    threshold=metric.threshold,
                ))
        return sample

    async def check_business_metrics(self, monitor):
        target = monitor.target
        if self.metrics is None:
            return None
        values = {}
        for metric in monitor.config.business_metrics:
            try:
                value = await self.metrics.sample_business_metric(target, metric.name)
            except RolloutError as e:
                self.logger.error(f"Business metric {metric.name} unavailable for {target}: {e}")
                continue
            if value is None:
                continue
            values[metric.name] = value
            if metric.is_violated(value):
                await self.record_violation(monitor, Violation(
                    target=target,
                    timestamp=self.clock(),
                    category=ViolationCategory.BUSINESS,
                    kind=metric.name,
                    severity=Severity.MEDIUM,
                    actual_value=value,
                    threshold=metric.threshold,
                ))
        return values

    async def record_violation(self, monitor, violation):
        """Store a violation and act on it; returns the RollbackRecord when a rollback ran"""
        async with monitor.lock:
            if not monitor.active or self.monitors.get(monitor.target) is not monitor:
                self.logger.debug(f"Discarding {violation.kind} violation for inactive monitor of {monitor.target}")
                return None

            now = self.clock()
            monitor.violations.append(violation)
            monitor.violations = [v for v in monitor.violations if now - v.timestamp < VIOLATION_RETENTION_S]

            message = f"{violation.category.value} violation {violation.kind}"
            if violation.actual_value is not None:
                message += f": {violation.actual_value} (threshold {violation.threshold})"
            elif violation.detail:
                message += f": {violation.detail}"
            self.logger.warning(f"Violation recorded for {monitor.target}: {message}")
            self.raise_alert(monitor.target, "violation", message, violation.severity)

            return await self._evaluate_triggers(monitor, now)

    async def _evaluate_triggers(self, monitor, now):
        config = monitor.config
        if monitor.last_rollback_at is not None and now - monitor.last_rollback_at < config.cooldown_period_s:
            self.logger.debug(f"Rollback cooldown active for {monitor.target}")
            return None

        attempts = [t for t in self.rollback_attempts.get(monitor.target, []) if now - t < RATE_LIMIT_WINDOW_S]
        self.rollback_attempts[monitor.target] = attempts
        if len(attempts) >= config.max_rollbacks:
            self.logger.warning(f"Max rollback limit reached for {monitor.target}")
            self.raise_alert(monitor.target, "rollback_limit_reached",
                             f"{len(attempts)} rollbacks in the last hour", Severity.HIGH)
            return None

        reason = evaluate_trigger_rules(monitor.violations, now)
        if reason is None:
            return None
        self.logger.warning(f"Triggering automatic rollback for {monitor.target}: {reason}")
        return await self.execute_automatic_rollback(monitor, reason)

    async def execute_automatic_rollback(self, monitor, reason):
        target = monitor.target
        now = self.clock()
        monitor.last_rollback_at = now
        self.rollback_attempts.setdefault(target, []).append(now)
        monitor.rollback_count += 1

        record = RollbackRecord(
            target=target,
            timestamp=now,
            reason=reason,
            strategy=monitor.executor.strategy,
            triggering_violations=list(monitor.violations[-RECORD_VIOLATIONS:]),
        )
        try:
            outcome = await monitor.executor.rollback(target)
        except Exception as e:
            failure = RollbackExecutionFailed(f"Automatic rollback failed for {target}: {e}")
            self.logger.error(failure.message)
            record.error = failure.message
        else:
            record.success = True
            record.from_version = outcome.from_version
            record.to_version = outcome.to_version
            self.logger.info(f"Automatic rollback completed for {target} ({reason})")

        self._store(record)
        if self.on_rollback_executed is not None:
            try:
                self.on_rollback_executed(record)
            except Exception as e:
                self.logger.error(f"Rollback callback failed for {target}: {e}")
        self.notify({
            "type": "rollback",
            "target": target.key,
            "message": f"Automatic rollback ({reason}) {'succeeded' if record.success else 'failed'}",
            "record": record.to_dict(),
            "channels": list(monitor.config.notification_channels),
        })
        return record

    def _store(self, record):
        self.history.insert(0, record)
        del self.history[HISTORY_LIMIT:]

    def raise_alert(self, target, kind, message, severity=Severity.MEDIUM):
        alert = Alert(target=target, timestamp=self.clock(), kind=kind, message=message, severity=severity)
        self.alerts.insert(0, alert)
        del self.alerts[ALERT_LIMIT:]
        if self.on_alert is not None:
            try:
                self.on_alert(alert)
            except Exception as e:
                self.logger.error(f"Alert callback failed for {target}: {e}")
        return alert

    def notify(self, event):
        """Deliver to the notifier in the background"""
        if self.notifier is None:
            return None
        task = asyncio.ensure_future(self._deliver(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)
        return task

    async def _deliver(self, event):
        try:
            await self.notifier.notify(event)
        except Exception as e:
            self.logger.error(f"Notification delivery failed for {event.get('target')}: {e}")

    def get_active_monitors(self):
        return [m.summary() for m in self.monitors.values()]

    def get_monitoring_status(self, target):
        monitor = self.monitors.get(target)
        return monitor.summary() if monitor else None

    def get_rollback_history(self, service_name=None, limit=HISTORY_LIMIT):
        history = self.history
        if service_name:
            history = [r for r in history if r.target.service_name == service_name]
        return history[:limit]

    async def shutdown(self):
        """Disable every monitor and wait for pending notifications"""
        for target in list(self.monitors):
            self.disable_automatic_rollback(target)
        if self._notifications:
            await asyncio.gather(*self._notifications, return_exceptions=True)
