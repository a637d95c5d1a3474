#Description: Error taxonomy shared by the breaker, feed, scheduler and alert engine.


class EngineError(Exception):
    pass


class DependencyUnavailable(EngineError):
    """The dependency is being short-circuited; callers must not retry immediately."""

    def __init__(self, dependency: str, message: str):
        super().__init__(message)
        self.dependency = dependency


class CircuitOpen(DependencyUnavailable):
    def __init__(self, dependency: str):
        super().__init__(dependency, f"Circuit breaker is OPEN for {dependency}")


class QueueFull(DependencyUnavailable):
    def __init__(self, dependency: str):
        super().__init__(dependency, f"Circuit breaker queue is full for {dependency}")


class TransientExecutionFailure(EngineError):
    pass


class TerminalExecutionFailure(EngineError):
    pass


class FeedUnreachable(EngineError):
    def __init__(self, network: str, token_address: str, attempts: int):
        super().__init__(f"Feed {network}:{token_address} unreachable after {attempts} reconnect attempts")
        self.network = network
        self.token_address = token_address
        self.attempts = attempts


class InvalidSpec(EngineError, ValueError):
    pass


class RecordNotFound(EngineError, LookupError):
    pass
