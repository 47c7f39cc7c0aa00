class FailureInjector:
    """Makes the first N calls of a gateway operation fail.

    Keys are either an operation name (``"scale_workload"``) or an operation
    scoped to one object (``"get_workload:checkout-green"``).
    """

    def __init__(self, fail_calls=None, delay=0):
        self.fail_map = fail_calls or {}
        self.delay = delay
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def should_fail(self, operation, name=None):
        for key in (f"{operation}:{name}", operation):
            if key in self.fail_map:
                self.attempts[key] = self.attempts.get(key, 0) + 1
                return self.attempts[key] <= self.fail_map[key]
        return False
