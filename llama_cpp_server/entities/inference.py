from typing import Literal

from pydantic import BaseModel, Field


class Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class CompletionOptions(BaseModel):
    max_input_length: int = Field(1024 * 10, gt=0)
    max_decoding_tokens: int = Field(64, gt=0)
    sampling_temperature: float = Field(0.1, ge=0.0)
    seed: int = 0
    presence_penalty: float = 0.0


class ChatCompletionOptions(BaseModel):
    max_decoding_tokens: int = Field(2048, gt=0)
    sampling_temperature: float = Field(0.1, ge=0.0)
    seed: int = 0
    presence_penalty: float = 0.0


class EmbeddingRequest(BaseModel):
    input: str | list[str]

    @property
    def inputs(self) -> list[str]:
        return [self.input] if isinstance(self.input, str) else self.input


class CompletionRequest(BaseModel):
    prompt: str
    options: CompletionOptions = Field(default_factory=CompletionOptions)


class ChatCompletionRequest(BaseModel):
    messages: list[Message] = Field(min_length=1)
    options: ChatCompletionOptions = Field(default_factory=ChatCompletionOptions)
