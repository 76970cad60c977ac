from enum import Enum


class WorkloadKind(str, Enum):
    """Operational mode of a llama-server instance."""

    EMBEDDING = "embedding"
    COMPLETION = "completion"
    CHAT = "chat"


class ReadinessState(str, Enum):
    """Lifecycle state of a supervised llama-server process."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    PROBING = "probing"
    READY = "ready"
    RESTARTING = "restarting"
    TERMINATED = "terminated"