from pathlib import Path
from typing import AsyncIterator, Protocol, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from llama_cpp_server.entities.inference import ChatCompletionOptions, CompletionOptions, Message
    from llama_cpp_server.frameworks_drivers.config import HttpModelConfig


class Embedding(Protocol):
    async def embed(self, prompt: str) -> list[float]: ...


class CompletionStream(Protocol):
    def generate(self, prompt: str, options: 'CompletionOptions') -> AsyncIterator[str]: ...


class ChatCompletionStream(Protocol):
    def chat_completion(
        self, messages: Sequence['Message'], options: 'ChatCompletionOptions'
    ) -> AsyncIterator[str]: ...


class ModelPathResolverProtocol(Protocol):
    def resolve(self, model_id: str) -> Path: ...


class HttpBindingsProtocol(Protocol):
    def create_embedding(self, config: 'HttpModelConfig') -> Embedding: ...

    def create_completion(self, config: 'HttpModelConfig') -> CompletionStream: ...

    def create_chat(self, config: 'HttpModelConfig') -> ChatCompletionStream: ...
