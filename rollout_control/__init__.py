from .models import (
    DeploymentTarget, Strategy, RunStatus, StrategyRun, BlueGreenOptions, CanaryConfig, CanaryScoreWeights,
    RollbackConfig, PipelineConfig, RollbackRecord, Violation
)
from .errors import RolloutError, GatewayError, NotFound
from .bluegreen import BlueGreenExecutor
from .canary import CanaryExecutor
from .strategies import RollingExecutor
from .rollback import RollbackAutomationManager
from .engine import PipelineOrchestrator
from .service import ControlPlane
from .inmemory import InMemoryClusterGateway, StaticMetricsSource
from .failure import FailureInjector

__all__ = [
    "DeploymentTarget", "Strategy", "RunStatus", "StrategyRun",
    "BlueGreenOptions", "CanaryConfig", "CanaryScoreWeights", "RollbackConfig", "PipelineConfig",
    "RollbackRecord", "Violation",
    "RolloutError", "GatewayError", "NotFound",
    "BlueGreenExecutor", "CanaryExecutor", "RollingExecutor",
    "RollbackAutomationManager", "PipelineOrchestrator", "ControlPlane",
    "InMemoryClusterGateway", "StaticMetricsSource", "FailureInjector"
]
