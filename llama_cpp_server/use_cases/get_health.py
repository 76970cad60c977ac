from typing import Any, Iterable, Protocol

from llama_cpp_server.frameworks_drivers.supervisor import LlamaCppSupervisor


class SupervisorSource(Protocol):
    @property
    def supervisors(self) -> Iterable[LlamaCppSupervisor]: ...


class GetHealth:
    def __init__(self, source: SupervisorSource):
        self.source = source

    def execute(self) -> dict[str, Any]:
        statuses = [supervisor.status() for supervisor in self.source.supervisors]
        # one terminated backend degrades its own capability only
        status = "ok" if all(s.available for s in statuses) else "degraded"
        return {
            "status": status,
            "backends": [s.model_dump(mode="json") for s in statuses],
        }
