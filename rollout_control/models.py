import time
import uuid
from dataclasses import dataclass, field, asdict, fields
from enum import Enum

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"


class Strategy(str, Enum):
    BLUE_GREEN = "blue-green"
    CANARY = "canary"
    ROLLING = "rolling"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class StageStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ViolationCategory(str, Enum):
    HEALTH = "health"
    PERFORMANCE = "performance"
    BUSINESS = "business"


class CanaryPhase(str, Enum):
    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


def _known_fields(cls, data):
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


@dataclass(frozen=True)
class DeploymentTarget:
    service_name: str
    namespace: str = "default"

    @property
    def key(self):
        return f"{self.namespace}/{self.service_name}"

    def in_namespace(self, namespace):
        return DeploymentTarget(self.service_name, namespace)

    @classmethod
    def from_dict(cls, data):
        return cls(**_known_fields(cls, data))

    def __str__(self):
        return self.key


@dataclass
class StageResult:
    name: str
    status: StageStatus = StageStatus.STARTED
    started_at: float = field(default_factory=time.time)
    ended_at: float = None
    detail: dict = field(default_factory=dict)

    def complete(self, detail=None):
        self._finish(StageStatus.COMPLETED, detail)

    def fail(self, error):
        self._finish(StageStatus.FAILED, {"error": str(error)})

    def _finish(self, status, detail):
        if self.status != StageStatus.STARTED:
            raise RuntimeError(f"stage {self.name} already finished as {self.status.value}")
        self.status = status
        self.ended_at = time.time()
        if detail:
            self.detail.update(detail)

    @property
    def duration_s(self):
        if self.ended_at is None:
            return 0.0
        return self.ended_at - self.started_at

    @classmethod
    def from_dict(cls, data):
        data = _known_fields(cls, data)
        data["status"] = StageStatus(data.get("status", StageStatus.STARTED))
        return cls(**data)


@dataclass
class BuildResult:
    artifact_ref: str
    duration_s: float = 0.0
    cache_hit_ratio: float = 0.0  # Percentage of layers served from cache
    skipped: bool = False

    @classmethod
    def from_dict(cls, data):
        return cls(**_known_fields(cls, data))


def new_run_id():
    return f"run-{uuid.uuid4().hex[:12]}"


@dataclass
class StrategyRun:
    """One pass of the pipeline for a target"""
    target: DeploymentTarget
    strategy: Strategy
    run_id: str = field(default_factory=new_run_id)
    artifact_ref: str = None
    started_at: float = field(default_factory=time.time)
    stages: list = field(default_factory=list)  # StageResult entries in execution order
    status: RunStatus = RunStatus.RUNNING
    ended_at: float = None
    error: str = None
    error_kind: str = None
    build: BuildResult = None

    def start_stage(self, name):
        stage = StageResult(name=name)
        self.stages.append(stage)
        return stage

    def stage(self, name):
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def finish(self, status, error=None):
        if self.status != RunStatus.RUNNING:
            raise RuntimeError(f"run {self.run_id} already finished as {self.status.value}")
        self.status = status
        self.ended_at = time.time()
        if error is not None:
            self.error = str(error)
            self.error_kind = type(error).__name__

    @property
    def success(self):
        return self.status == RunStatus.SUCCEEDED

    @property
    def duration_s(self):
        end = self.ended_at if self.ended_at is not None else time.time()
        return end - self.started_at

    def to_dict(self):
        data = asdict(self)
        data["duration_s"] = self.duration_s
        return data

    @classmethod
    def from_dict(cls, data):
        values = _known_fields(cls, data)
        values["target"] = DeploymentTarget.from_dict(data["target"])
        values["strategy"] = Strategy(data["strategy"])
        values["status"] = RunStatus(data.get("status", RunStatus.RUNNING))
        values["stages"] = [StageResult.from_dict(s) for s in data.get("stages", [])]
        if data.get("build"):
            values["build"] = BuildResult.from_dict(data["build"])
        return cls(**values)


@dataclass
class HealthSample:
    target: DeploymentTarget
    timestamp: float
    total_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0

    @property
    def readiness_pct(self):
        if self.total_replicas <= 0:
            return 0.0
        return self.ready_replicas / self.total_replicas * 100.0

    @property
    def availability_pct(self):
        if self.total_replicas <= 0:
            return 0.0
        return self.available_replicas / self.total_replicas * 100.0


@dataclass
class PerformanceSample:
    target: DeploymentTarget
    timestamp: float
    response_time_ms: float = None
    error_rate_pct: float = None
    throughput: float = None

    def as_metrics(self):
        """Values keyed by the metric names used in thresholds"""
        return {
            "response_time": self.response_time_ms,
            "error_rate": self.error_rate_pct,
            "throughput": self.throughput,
        }


@dataclass
class MetricThreshold:
    name: str
    threshold: float
    comparison: str = "greater_than"  # greater_than | less_than | equals

    def is_violated(self, value):
        if self.comparison == "greater_than":
            return value > self.threshold
        if self.comparison == "less_than":
            return value < self.threshold
        if self.comparison == "equals":
            return value == self.threshold
        return False

    @classmethod
    def from_dict(cls, data):
        return cls(**_known_fields(cls, data))


@dataclass
class Violation:
    target: DeploymentTarget
    timestamp: float
    category: ViolationCategory
    kind: str
    severity: Severity
    actual_value: float = None
    threshold: float = None
    detail: str = None

    @classmethod
    def from_dict(cls, data):
        values = _known_fields(cls, data)
        values["target"] = DeploymentTarget.from_dict(data["target"])
        values["category"] = ViolationCategory(data["category"])
        values["severity"] = Severity(data["severity"])
        return cls(**values)


@dataclass
class RollbackOutcome:
    strategy: Strategy
    from_version: str = None
    to_version: str = None
    detail: dict = field(default_factory=dict)


@dataclass
class RollbackRecord:
    target: DeploymentTarget
    timestamp: float
    reason: str
    strategy: Strategy = None
    from_version: str = None
    to_version: str = None
    success: bool = False
    triggering_violations: list = field(default_factory=list)
    error: str = None
    automatic: bool = True

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        values = _known_fields(cls, data)
        values["target"] = DeploymentTarget.from_dict(data["target"])
        if data.get("strategy"):
            values["strategy"] = Strategy(data["strategy"])
        values["triggering_violations"] = [
            Violation.from_dict(v) for v in data.get("triggering_violations", [])
        ]
        return cls(**values)


@dataclass
class Alert:
    target: DeploymentTarget
    timestamp: float
    kind: str
    message: str
    severity: Severity = Severity.MEDIUM


@dataclass
class CanaryState:
    name: str
    phase: CanaryPhase = CanaryPhase.PROGRESSING
    weight: int = 0
    iterations: int = 0
    failed_checks: int = 0
    message: str = None
    raw_phase: str = None  # Phase exactly as reported by the controller

    @classmethod
    def from_resource(cls, resource):
        metadata = resource.get("metadata") or {}
        status = resource.get("status") or {}
        raw_phase = status.get("phase") or "Unknown"
        if raw_phase == CanaryPhase.SUCCEEDED.value:
            phase = CanaryPhase.SUCCEEDED
        elif raw_phase == CanaryPhase.FAILED.value:
            phase = CanaryPhase.FAILED
        else:
            phase = CanaryPhase.PROGRESSING
        conditions = status.get("conditions") or []
        message = conditions[0].get("message") if conditions else None
        return cls(
            name=metadata.get("name", ""),
            phase=phase,
            weight=status.get("canaryWeight", 0) or 0,
            iterations=status.get("iterations", 0) or 0,
            failed_checks=status.get("failedChecks", 0) or 0,
            message=message,
            raw_phase=raw_phase,
        )

    @property
    def terminal(self):
        return self.phase != CanaryPhase.PROGRESSING


@dataclass
class BlueGreenOptions:
    """Configuration for blue-green rollouts"""
    replicas: int = None  # Green replica count; defaults to blue's declared count
    default_replicas: int = 3  # Used when neither option nor blue provides a count
    ready_timeout_s: float = 300.0  # Max wait for a workload to become ready
    poll_interval_s: float = 5.0  # Readiness polling period
    settle_delay_s: float = 10.0  # Wait after the selector switch before verifying it
    observation_window_s: float = 300.0  # Post-switch health watch
    observation_interval_s: float = 30.0
    liveness_threshold: float = 90.0  # Min % of live pods
    skip_tests: bool = False
    keep_blue: bool = False

    @classmethod
    def from_dict(cls, data):
        return cls(**_known_fields(cls, data))


def default_canary_metrics():
    return [
        {"name": "request-success-rate", "thresholdRange": {"min": 99}, "interval": "1m"},
        {"name": "request-duration", "thresholdRange": {"max": 500}, "interval": "1m"},
        {"name": "error-rate", "thresholdRange": {"max": 1}, "interval": "1m"},
    ]


@dataclass
class CanaryConfig:
    """Analysis parameters declared on the progressive-delivery resource"""
    port: int = 80
    target_port: int = 3000
    gateways: list = None
    hosts: list = None
    domain: str = "example.com"
    interval: str = "30s"
    threshold: int = 5  # Failed checks before the controller rolls back
    max_weight: int = 50
    step_weight: int = 10
    iterations: int = 10
    metrics: list = field(default_factory=default_canary_metrics)
    webhooks: list = None  # Defaults to health-check and integration-test hooks
    test_runner_url: str = "http://test-runner/run-integration-tests"
    timeout_s: float = 1800.0
    poll_interval_s: float = 10.0

    @classmethod
    def from_dict(cls, data):
        return cls(**_known_fields(cls, data))


@dataclass
class CanaryScoreWeights:
    success_rate: float = 30
    error_rate: float = 20
    latency: float = 20
    health_check: float = 15
    integration_tests: float = 15
    pass_score: float = 80

    @property
    def total(self):
        return self.success_rate + self.error_rate + self.latency + self.health_check + self.integration_tests

    @classmethod
    def from_dict(cls, data):
        return cls(**_known_fields(cls, data))


def default_performance_metrics():
    return [
        MetricThreshold("response_time", 2000.0, "greater_than"),
        MetricThreshold("error_rate", 5.0, "greater_than"),
    ]


def default_business_metrics():
    return [MetricThreshold("user_registrations", 0.8, "less_than")]


@dataclass
class RollbackConfig:
    """Automatic rollback supervision for one target"""
    check_families: list = field(default_factory=lambda: ["health", "performance"])
    cooldown_period_s: float = 300.0  # Min time between rollbacks
    max_rollbacks: int = 3  # Max rollbacks per trailing hour
    readiness_threshold: float = 80.0
    liveness_threshold: float = 90.0
    health_interval_s: float = 30.0
    performance_interval_s: float = 60.0
    business_interval_s: float = 120.0
    performance_metrics: list = field(default_factory=default_performance_metrics)
    business_metrics: list = field(default_factory=default_business_metrics)
    notification_channels: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        values = _known_fields(cls, data)
        for key in ("performance_metrics", "business_metrics"):
            if key in values:
                values[key] = [
                    m if isinstance(m, MetricThreshold) else MetricThreshold.from_dict(m)
                    for m in values[key]
                ]
        return cls(**values)


@dataclass
class PipelineConfig:
    """Everything one pipeline run needs"""
    target: DeploymentTarget
    deployment_strategy: str = Strategy.BLUE_GREEN.value
    version: str = "latest"
    artifact_ref: str = None  # Prebuilt artifact; with skip_build the build stage is bypassed
    skip_build: bool = False
    dockerfile: str = None
    build_context: str = None
    build_target: str = "production"
    build_options: dict = field(default_factory=dict)
    enable_rollback_automation: bool = True
    blue_green: BlueGreenOptions = field(default_factory=BlueGreenOptions)
    canary: CanaryConfig = field(default_factory=CanaryConfig)
    rollback: RollbackConfig = field(default_factory=RollbackConfig)

    def options_for(self, strategy):
        if strategy == Strategy.BLUE_GREEN:
            return self.blue_green
        if strategy == Strategy.CANARY:
            return self.canary
        return self.blue_green

    @classmethod
    def from_dict(cls, data):
        values = _known_fields(cls, data)
        target = values.get("target")
        if isinstance(target, dict):
            values["target"] = DeploymentTarget.from_dict(target)
        elif target is None:
            values["target"] = DeploymentTarget(data["service_name"], data.get("namespace", "default"))
        for key, option_cls in (("blue_green", BlueGreenOptions), ("canary", CanaryConfig),
                                ("rollback", RollbackConfig)):
            if isinstance(values.get(key), dict):
                values[key] = option_cls.from_dict(values[key])
        return cls(**values)


@dataclass
class Recommendation:
    type: str
    priority: Priority
    description: str
    current_value: str = None
    target_value: str = None
    suggestions: list = field(default_factory=list)


@dataclass
class PipelineResult:
    success: bool
    duration_s: float = 0.0
    run: StrategyRun = None
    error: str = None
    error_kind: str = None


@dataclass
class RollbackResult:
    success: bool
    duration_s: float = 0.0
    strategy: Strategy = None
    method: str = "auto-detect"
    record: RollbackRecord = None
    error: str = None
    error_kind: str = None


@dataclass
class PromotionResult:
    success: bool
    source: DeploymentTarget = None
    destination: DeploymentTarget = None
    duration_s: float = 0.0
    stages: list = field(default_factory=list)
    run: StrategyRun = None
    error: str = None
    error_kind: str = None


@dataclass
class OptimizationReport:
    success: bool
    target: DeploymentTarget = None
    generated_at: float = field(default_factory=time.time)
    duration_s: float = 0.0
    analyses: list = field(default_factory=list)  # Per-area metrics and recommendations
    recommendations: list = field(default_factory=list)  # Recommendation entries, highest priority first
    summary: dict = field(default_factory=dict)
    error: str = None
    error_kind: str = None


@dataclass
class StatusReport:
    success: bool
    duration_s: float = 0.0
    statistics: dict = field(default_factory=dict)
    recent_runs: list = field(default_factory=list)
    monitors: list = field(default_factory=list)
    error: str = None
    error_kind: str = None


@dataclass
class OperationResult:
    success: bool
    duration_s: float = 0.0
    detail: dict = field(default_factory=dict)
    error: str = None
    error_kind: str = None
