from typing import AsyncIterator

from fastapi import HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from llama_cpp_server.entities.inference import ChatCompletionRequest, CompletionRequest, EmbeddingRequest
from llama_cpp_server.entities.workload import WorkloadKind
from llama_cpp_server.shared.error_utils import ErrorUtils
from llama_cpp_server.shared.errors import InferenceUnavailable


async def _prepend(first: str, rest: AsyncIterator[str]) -> AsyncIterator[str]:
    yield first
    async for chunk in rest:
        yield chunk


class InferenceController:
    """Routes HTTP requests to the configured capability backends."""

    def __init__(self, backends: dict[WorkloadKind, object]):
        self.backends = backends

    def _backend(self, kind: WorkloadKind):
        backend = self.backends.get(kind)
        if backend is None:
            raise HTTPException(status_code=404, detail=f"No {kind.value} model is configured")
        return backend

    @staticmethod
    def _parse(model, request: dict):
        try:
            return model.model_validate(request)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=e.errors(include_url=False)) from e

    @staticmethod
    def _unavailable(error: InferenceUnavailable) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content=ErrorUtils.format_error_response(str(error), ErrorUtils.BACKEND_UNAVAILABLE, code=503),
        )

    async def embeddings(self, request: dict):
        backend = self._backend(WorkloadKind.EMBEDDING)
        parsed = self._parse(EmbeddingRequest, request)
        try:
            vectors = [await backend.embed(text) for text in parsed.inputs]
        except InferenceUnavailable as e:
            return self._unavailable(e)
        return {
            "object": "list",
            "data": [
                {"object": "embedding", "index": i, "embedding": vector}
                for i, vector in enumerate(vectors)
            ],
        }

    async def completions(self, request: dict):
        backend = self._backend(WorkloadKind.COMPLETION)
        parsed = self._parse(CompletionRequest, request)
        return await self._stream(backend.generate(parsed.prompt, parsed.options))

    async def chat_completions(self, request: dict):
        backend = self._backend(WorkloadKind.CHAT)
        parsed = self._parse(ChatCompletionRequest, request)
        return await self._stream(backend.chat_completion(parsed.messages, parsed.options))

    async def _stream(self, chunks: AsyncIterator[str]):
        # pull the first chunk so an unavailable backend still maps to a 503 status
        try:
            first = await anext(chunks)
        except StopAsyncIteration:
            return StreamingResponse(iter(()), media_type="text/plain")
        except InferenceUnavailable as e:
            return self._unavailable(e)
        return StreamingResponse(_prepend(first, chunks), media_type="text/plain")
