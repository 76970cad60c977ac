from pydantic import BaseModel, Field

from .workload import ReadinessState, WorkloadKind


class SupervisorStatus(BaseModel):
    """Point-in-time view of one supervised llama-server, as reported by /health."""

    name: str
    kind: WorkloadKind
    state: ReadinessState
    port: int | None = Field(default=None, ge=1, le=65535)
    pid: int | None = None
    restarts: int = Field(default=0, ge=0)
    failure: str | None = None

    @property
    def available(self) -> bool:
        return self.state is not ReadinessState.TERMINATED
