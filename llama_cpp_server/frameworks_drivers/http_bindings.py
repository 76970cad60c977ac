import json
from typing import AsyncIterator, Sequence

import httpx

from llama_cpp_server.entities.inference import ChatCompletionOptions, CompletionOptions, Message
from llama_cpp_server.frameworks_drivers.config import HttpModelConfig
from llama_cpp_server.shared.logger import Logger

logger = Logger.get(__name__)

EMBEDDING_KINDS = ("llama.cpp/embedding",)
COMPLETION_KINDS = ("llama.cpp/completion",)
CHAT_KINDS = ("openai/chat", "llama.cpp/chat")


async def _sse_events(response: httpx.Response) -> AsyncIterator[str]:
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            yield line[len("data:"):].strip()


class LlamaCppEmbedding:
    def __init__(self, config: HttpModelConfig):
        self.api_endpoint = config.api_endpoint.rstrip("/")
        self.timeout = config.timeout

    async def embed(self, prompt: str) -> list[float]:
        url = f"{self.api_endpoint}/embedding"
        async with httpx.AsyncClient() as client:
            response = await client.post(url, json={"content": prompt}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()

        # newer llama-server builds answer with one result per input
        if isinstance(data, list):
            data = data[0]
        embedding = data["embedding"]
        if embedding and isinstance(embedding[0], list):
            embedding = embedding[0]
        return embedding


class LlamaCppCompletion:
    def __init__(self, config: HttpModelConfig):
        self.api_endpoint = config.api_endpoint.rstrip("/")
        self.timeout = config.timeout

    async def generate(self, prompt: str, options: CompletionOptions) -> AsyncIterator[str]:
        url = f"{self.api_endpoint}/completion"
        body = {
            "prompt": prompt[-options.max_input_length:],
            "n_predict": options.max_decoding_tokens,
            "temperature": options.sampling_temperature,
            "seed": options.seed,
            "presence_penalty": options.presence_penalty,
            "stream": True,
        }
        async with httpx.AsyncClient() as client:
            async with client.stream("POST", url, json=body, timeout=self.timeout) as response:
                response.raise_for_status()
                async for event in _sse_events(response):
                    data = json.loads(event)
                    if data.get("content"):
                        yield data["content"]
                    if data.get("stop"):
                        break


class OpenAIChat:
    def __init__(self, config: HttpModelConfig):
        self.api_endpoint = config.api_endpoint.rstrip("/")
        self.model_name = config.model_name
        self.timeout = config.timeout

    async def chat_completion(
        self, messages: Sequence[Message], options: ChatCompletionOptions
    ) -> AsyncIterator[str]:
        url = f"{self.api_endpoint}/v1/chat/completions"
        body = {
            "messages": [message.model_dump() for message in messages],
            "max_tokens": options.max_decoding_tokens,
            "temperature": options.sampling_temperature,
            "seed": options.seed,
            "presence_penalty": options.presence_penalty,
            "stream": True,
        }
        if self.model_name:
            body["model"] = self.model_name
        async with httpx.AsyncClient() as client:
            async with client.stream("POST", url, json=body, timeout=self.timeout) as response:
                response.raise_for_status()
                async for event in _sse_events(response):
                    if event == "[DONE]":
                        break
                    choices = json.loads(event).get("choices") or []
                    content = choices[0].get("delta", {}).get("content") if choices else None
                    if content:
                        yield content


class HttpBindings:
    """Builds protocol clients for a backend reachable over HTTP."""

    def create_embedding(self, config: HttpModelConfig) -> LlamaCppEmbedding:
        if config.kind not in EMBEDDING_KINDS:
            raise ValueError(f"Unsupported embedding kind: {config.kind}")
        return LlamaCppEmbedding(config)

    def create_completion(self, config: HttpModelConfig) -> LlamaCppCompletion:
        if config.kind not in COMPLETION_KINDS:
            raise ValueError(f"Unsupported completion kind: {config.kind}")
        return LlamaCppCompletion(config)

    def create_chat(self, config: HttpModelConfig) -> OpenAIChat:
        if config.kind not in CHAT_KINDS:
            raise ValueError(f"Unsupported chat kind: {config.kind}")
        return OpenAIChat(config)
