class SupervisorError(Exception):
    """Base class for failures raised by a llama-server supervisor."""


class PortExhausted(SupervisorError):
    """No free local port was found within the allowed number of attempts."""

    def __init__(self, attempts: int):
        super().__init__(f"No free port found after {attempts} attempts")
        self.attempts = attempts


class SpawnFailure(SupervisorError):
    """The llama-server binary is missing, not executable, or could not be started."""


class ReadinessTimeout(SupervisorError):
    """The spawned server did not report healthy before the readiness timeout."""

    def __init__(self, endpoint: str, timeout: float):
        super().__init__(f"{endpoint} did not become ready within {timeout:.1f}s")
        self.endpoint = endpoint
        self.timeout = timeout


class ProcessCrashed(SupervisorError):
    """The child process exited while it was expected to be serving."""

    def __init__(self, name: str, returncode: int | None):
        super().__init__(f"llama-server <{name}> exited with return code {returncode}")
        self.name = name
        self.returncode = returncode


class RestartLimitExceeded(SupervisorError):
    """The child kept crashing and the restart budget is used up."""

    def __init__(self, name: str, max_restarts: int):
        super().__init__(f"llama-server <{name}> exceeded its restart budget of {max_restarts}")
        self.name = name
        self.max_restarts = max_restarts


class SupervisorNotReady(SupervisorError):
    """The supervisor was asked for its endpoint before reaching the ready state."""


class SupervisorTerminated(SupervisorError):
    """The supervisor was stopped and cannot be started again."""


class InferenceUnavailable(Exception):
    """A capability backend is not available to serve requests."""
