from typing import AsyncIterator, Sequence

import httpx

from llama_cpp_server.entities.inference import ChatCompletionOptions, CompletionOptions, Message
from llama_cpp_server.entities.workload import WorkloadKind
from llama_cpp_server.frameworks_drivers.config import HttpModelConfig, SupervisorConfig, SupervisorSettings
from llama_cpp_server.frameworks_drivers.http_bindings import HttpBindings
from llama_cpp_server.frameworks_drivers.supervisor import LlamaCppSupervisor
from llama_cpp_server.shared.errors import InferenceUnavailable, SupervisorError
from llama_cpp_server.shared.logger import Logger
from llama_cpp_server.shared.protocols import HttpBindingsProtocol

logger = Logger.get(__name__)


class SupervisedBackend:
    """
    Couples a supervisor with a protocol client pointed at its current port.

    Request policy while the server restarts: calls wait on the supervisor
    until it is ready again and then use a client rebuilt for the new port.
    A call that reaches the dead process before the monitor notices fails
    once with InferenceUnavailable; retrying it succeeds after the restart.
    Error statuses from llama-server (503 while busy or loading) raise
    InferenceUnavailable as well.
    Once the supervisor is terminated every call raises InferenceUnavailable.
    """

    KIND: WorkloadKind
    PROTOCOL: str

    def __init__(self, server: LlamaCppSupervisor, bindings: HttpBindingsProtocol | None = None):
        self.server = server
        self.bindings = bindings or HttpBindings()
        self._client = None
        self._client_port: int | None = None

    @classmethod
    async def create(
        cls,
        config: SupervisorConfig,
        settings: SupervisorSettings | None = None,
        bindings: HttpBindingsProtocol | None = None,
        name: str | None = None,
    ):
        """Start a supervised llama-server and wrap it. Any startup failure aborts construction."""
        if config.kind is not cls.KIND:
            raise ValueError(f"{cls.__name__} serves {cls.KIND.value}, not {config.kind.value}")
        server = LlamaCppSupervisor(name or cls.KIND.value, config, settings)
        backend = cls(server, bindings)
        try:
            await server.start()
            await backend._ensure_client()
        except BaseException:
            await server.stop()
            raise
        return backend

    def _build_client(self, config: HttpModelConfig):
        raise NotImplementedError

    async def _ensure_client(self):
        try:
            await self.server.start()
            port = self.server.port()
        except SupervisorError as e:
            raise InferenceUnavailable(f"{self.KIND.value} backend is unavailable: {e}") from e

        if self._client is None or port != self._client_port:
            if self._client_port is not None:
                logger.info(f"{self.KIND.value} backend moved from port {self._client_port} to {port}")
            self._client = self._build_client(HttpModelConfig(api_endpoint=self.server.endpoint, kind=self.PROTOCOL))
            self._client_port = port
        return self._client

    def _unavailable(self, error: httpx.HTTPError) -> InferenceUnavailable:
        logger.warning(f"{self.KIND.value} request to port {self._client_port} failed: {error}")
        return InferenceUnavailable(f"{self.KIND.value} backend did not answer: {error}")

    async def close(self) -> None:
        await self.server.stop()


class EmbeddingServer(SupervisedBackend):
    KIND = WorkloadKind.EMBEDDING
    PROTOCOL = "llama.cpp/embedding"

    def _build_client(self, config: HttpModelConfig):
        return self.bindings.create_embedding(config)

    async def embed(self, prompt: str) -> list[float]:
        client = await self._ensure_client()
        try:
            return await client.embed(prompt)
        except httpx.HTTPError as e:
            raise self._unavailable(e) from e


class CompletionServer(SupervisedBackend):
    KIND = WorkloadKind.COMPLETION
    PROTOCOL = "llama.cpp/completion"

    def _build_client(self, config: HttpModelConfig):
        return self.bindings.create_completion(config)

    async def generate(self, prompt: str, options: CompletionOptions) -> AsyncIterator[str]:
        client = await self._ensure_client()
        try:
            async for chunk in client.generate(prompt, options):
                yield chunk
        except httpx.HTTPError as e:
            raise self._unavailable(e) from e


class ChatCompletionServer(SupervisedBackend):
    KIND = WorkloadKind.CHAT
    PROTOCOL = "openai/chat"

    def _build_client(self, config: HttpModelConfig):
        return self.bindings.create_chat(config)

    async def chat_completion(
        self, messages: Sequence[Message], options: ChatCompletionOptions
    ) -> AsyncIterator[str]:
        client = await self._ensure_client()
        try:
            async for chunk in client.chat_completion(messages, options):
                yield chunk
        except httpx.HTTPError as e:
            raise self._unavailable(e) from e
