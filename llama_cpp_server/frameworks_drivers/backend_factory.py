import asyncio

from llama_cpp_server.entities.workload import WorkloadKind
from llama_cpp_server.frameworks_drivers.config import (
    HttpModelConfig,
    LocalModelConfig,
    SupervisorConfig,
    SupervisorSettings,
)
from llama_cpp_server.frameworks_drivers.http_bindings import HttpBindings
from llama_cpp_server.frameworks_drivers.llama_cpp_service import (
    ChatCompletionServer,
    CompletionServer,
    EmbeddingServer,
    SupervisedBackend,
)
from llama_cpp_server.frameworks_drivers.model_resolver import ModelResolver
from llama_cpp_server.frameworks_drivers.supervisor import LlamaCppSupervisor
from llama_cpp_server.shared.logger import Logger
from llama_cpp_server.shared.protocols import (
    ChatCompletionStream,
    CompletionStream,
    Embedding,
    HttpBindingsProtocol,
    ModelPathResolverProtocol,
)

logger = Logger.get(__name__)


class BackendFactory:
    """
    Creates capability backends from model configs.

    Local models get a supervised llama-server; HTTP models are handed to the
    bindings unchanged. Supervised backends are tracked for health reporting
    and shutdown.
    """

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        model_resolver: ModelPathResolverProtocol | None = None,
        bindings: HttpBindingsProtocol | None = None,
    ):
        self.settings = settings or SupervisorSettings()
        self.model_resolver = model_resolver or ModelResolver()
        self.bindings = bindings or HttpBindings()
        self.backends: list[SupervisedBackend] = []

    @property
    def supervisors(self) -> list[LlamaCppSupervisor]:
        return [backend.server for backend in self.backends]

    async def create_embedding(self, model_config: LocalModelConfig | HttpModelConfig) -> Embedding:
        if isinstance(model_config, HttpModelConfig):
            return self.bindings.create_embedding(model_config)
        return await self._create_local(EmbeddingServer, model_config)

    async def create_completion(self, model_config: LocalModelConfig | HttpModelConfig) -> CompletionStream:
        if isinstance(model_config, HttpModelConfig):
            return self.bindings.create_completion(model_config)
        return await self._create_local(CompletionServer, model_config)

    async def create_chat_completion(self, model_config: LocalModelConfig | HttpModelConfig) -> ChatCompletionStream:
        if isinstance(model_config, HttpModelConfig):
            return self.bindings.create_chat(model_config)
        return await self._create_local(ChatCompletionServer, model_config)

    async def _create_local(self, backend_cls: type[SupervisedBackend], model_config: LocalModelConfig):
        model_path = self.model_resolver.resolve(model_config.model_id)
        config = SupervisorConfig(
            kind=backend_cls.KIND,
            num_gpu_layers=model_config.num_gpu_layers,
            model_path=str(model_path),
            parallelism=model_config.parallelism,
            chat_template=model_config.chat_template if backend_cls.KIND is WorkloadKind.CHAT else None,
        )
        backend = await backend_cls.create(config, self.settings, self.bindings)
        self.backends.append(backend)
        return backend

    async def shutdown(self) -> None:
        """Stop every supervised backend created by this factory."""
        await asyncio.gather(*(backend.close() for backend in self.backends))
        self.backends.clear()
        logger.info("All supervised llama-server backends stopped")
