import json
import os
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from llama_cpp_server.entities.workload import WorkloadKind


def _env_int(name: str, default: int | None = None):
    def factory() -> int | None:
        value = os.environ.get(name)
        return int(value) if value else default

    return factory


class SupervisorConfig(BaseModel):
    """Immutable launch parameters of one supervised llama-server.

    Attributes:
        kind: Workload the server is launched for.
        num_gpu_layers: Number of layers to offload to GPU (0 = CPU only).
        embedding: Whether to start the server in embedding mode.
        model_path: Filesystem path of the .gguf weights file.
        parallelism: Number of concurrent request slots.
        chat_template: Prompt template passed to chat servers.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    kind: WorkloadKind
    num_gpu_layers: int = Field(0, ge=0, description="Number of layers to offload to GPU (0 = CPU only)")
    embedding: bool = Field(False, description="Whether to start the server in embedding mode")
    model_path: str = Field(..., min_length=1, description="Filesystem path of the model weights file")
    parallelism: int = Field(1, ge=1, description="Number of concurrent request slots")
    chat_template: str | None = Field(None, description="Chat template, only used for chat servers")

    @model_validator(mode="before")
    @classmethod
    def default_embedding_flag(cls, data: Any) -> Any:
        if isinstance(data, dict) and "embedding" not in data:
            data = {**data, "embedding": data.get("kind") == WorkloadKind.EMBEDDING}
        return data

    @model_validator(mode="after")
    def check_flags_match_kind(self) -> "SupervisorConfig":
        if self.embedding and self.kind is not WorkloadKind.EMBEDDING:
            raise ValueError("embedding mode is only valid for embedding servers")
        if self.chat_template is not None and self.kind is not WorkloadKind.CHAT:
            raise ValueError("chat_template is only valid for chat servers")
        return self


class SupervisorSettings(BaseModel):
    """Tunables shared by every supervisor.

    Attributes:
        binary_path: Explicit llama-server binary; discovered when unset.
        host: Interface the child server binds to.
        health_endpoint: Path polled for readiness.
        readiness_timeout: Upper bound in seconds for a server to become ready.
        initial_backoff: First delay between readiness probes.
        max_backoff: Cap for probe and restart delays.
        backoff_factor: Multiplier applied to the probe delay after each miss.
        probe_request_timeout: Timeout of a single health request.
        max_restarts: Restarts allowed over the supervisor's lifetime.
        restart_backoff: Delay before the first restart attempt, doubled per attempt.
        monitor_interval: Seconds between liveness checks of a ready process.
        terminate_timeout: Grace period between SIGTERM and SIGKILL.
        port_attempts: Bind attempts before giving up on port allocation.
        context_size: Context window passed as --ctx-size.
        n_threads: CPU threads passed as --threads.
        embedding_ubatch_size: Physical batch size for embedding servers.
        log_dir: Directory receiving the child's stdout/stderr.
        extra_args: Additional arguments appended to every command line.
    """

    binary_path: str | None = Field(default_factory=lambda: os.environ.get("LLAMA_SERVER_BINARY"))
    host: str = Field("127.0.0.1", description="Interface the child server binds to")
    health_endpoint: str = Field("/health", description="Path polled for readiness")
    readiness_timeout: float = Field(60.0, gt=0, description="Seconds allowed for a server to become ready")
    initial_backoff: float = Field(0.5, gt=0, description="First delay between readiness probes")
    max_backoff: float = Field(5.0, gt=0, description="Cap for probe and restart delays")
    backoff_factor: float = Field(2.0, ge=1.0, description="Multiplier applied to the probe delay")
    probe_request_timeout: float = Field(2.0, gt=0, description="Timeout of a single health request")
    max_restarts: int = Field(3, ge=0, description="Restarts allowed over the supervisor's lifetime")
    restart_backoff: float = Field(1.0, ge=0, description="Delay before the first restart attempt")
    monitor_interval: float = Field(1.0, gt=0, description="Seconds between liveness checks")
    terminate_timeout: float = Field(10.0, gt=0, description="Grace period between SIGTERM and SIGKILL")
    port_attempts: int = Field(16, gt=0, description="Bind attempts before giving up on port allocation")
    context_size: int = Field(default_factory=_env_int("LLAMA_CPP_N_CONTEXT_SIZE", 4096), gt=0)
    n_threads: int | None = Field(default_factory=_env_int("LLAMA_CPP_N_THREADS"))
    embedding_ubatch_size: int = Field(default_factory=_env_int("LLAMA_CPP_EMBEDDING_N_UBATCH_SIZE", 4096), gt=0)
    log_dir: str | None = Field(None, description="Directory receiving the child's output")
    extra_args: list[str] = Field(default_factory=list, description="Arguments appended to every command line")


class LocalModelConfig(BaseModel):
    """A model served by a supervised local llama-server."""

    model_config = ConfigDict(protected_namespaces=())

    type: Literal["local"] = "local"
    model_id: str = Field(..., min_length=1, description="Model directory, file, or registry/name identifier")
    num_gpu_layers: int = Field(9999, ge=0, description="Number of layers to offload to GPU")
    parallelism: int = Field(1, ge=1, description="Number of concurrent request slots")
    chat_template: str | None = Field(None, description="Chat template for chat models")


class HttpModelConfig(BaseModel):
    """An already running backend reached over HTTP."""

    type: Literal["http"] = "http"
    api_endpoint: str = Field(..., description="Base URL of the backend")
    kind: str = Field(..., description="Wire protocol, e.g. 'llama.cpp/embedding' or 'openai/chat'")
    model_name: str | None = Field(None, description="Model name sent to OpenAI-compatible endpoints")
    timeout: float = Field(300.0, gt=0, description="Timeout for requests to the backend")


ModelConfig = Annotated[Union[LocalModelConfig, HttpModelConfig], Field(discriminator="type")]


class ServerConfig(BaseModel):
    """Configuration for the HTTP front server.

    Attributes:
        host: Host for the front server.
        port: Port for the front server.
    """

    host: str = Field("0.0.0.0", description="Host for the front server")
    port: int = Field(8000, description="Port for the front server")


class Config(BaseModel):
    """Main configuration class.

    Attributes:
        server: Configuration for the front server.
        supervisor: Tunables for every supervised llama-server.
        embedding: Model serving embeddings, if any.
        completion: Model serving completions, if any.
        chat: Model serving chat completions, if any.
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    embedding: ModelConfig | None = Field(default=None, description="Model serving embeddings")
    completion: ModelConfig | None = Field(default=None, description="Model serving completions")
    chat: ModelConfig | None = Field(default=None, description="Model serving chat completions")

    @classmethod
    def load(cls, config_path: str = "config.json") -> "Config":
        """Load and validate configuration from JSON file."""
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path) as f:
            data = json.load(f)

        return cls(**data)
