class RolloutError(Exception):
    """Base class for every failure raised by the control plane"""

    def __init__(self, message):
        super().__init__(message)
        self.message = message
        self.rolled_back = False
        self.run = None  # StrategyRun that failed, when raised out of a pipeline


class GatewayError(RolloutError):
    """The cluster API call failed"""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class NotFound(GatewayError):
    def __init__(self, message):
        super().__init__(message, status=404)


class DeploymentTimeout(RolloutError):
    """A bounded wait for readiness ran out"""


class UnhealthyTarget(RolloutError):
    """Health check failed"""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


class UnhealthyGreen(UnhealthyTarget):
    pass


class TrafficSwitchFailed(RolloutError):
    """Selector verification failed after the switch; traffic was reverted"""

    def __init__(self, message, previous=None):
        super().__init__(message)
        self.previous = previous


class CanaryFailed(RolloutError):
    def __init__(self, reason):
        super().__init__(f"Canary deployment failed: {reason}")
        self.reason = reason


class CanaryTimeout(RolloutError):
    pass


class ValidationFailed(RolloutError):
    """Pre-promotion checks did not pass"""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Promotion validation failed: " + ", ".join(self.errors))


class RollbackExecutionFailed(RolloutError):
    pass


class RunInProgress(RolloutError):
    """A pipeline run is already active for the target"""


class UnknownStrategy(RolloutError):
    pass


class MetricsUnavailable(RolloutError):
    pass


def error_kind(error):
    return type(error).__name__
