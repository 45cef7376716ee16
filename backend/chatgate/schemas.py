from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# Canonical
class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class CompletionRequest(BaseModel):
    # temperature, max_tokens etc. are accepted and ignored
    model: str
    messages: List[ChatMessage]
    stream: bool = False


class UsageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)
    prompt_latency: float = Field(default=0.0, ge=0.0)  # seconds
    completion_latency: float = Field(default=0.0, ge=0.0)  # seconds

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ErrorPayload(BaseModel):
    message: str
    type: Literal["validation_error", "service_unavailable", "internal_error"]


# OpenAI compat (subset)
class OAMessage(BaseModel):
    role: str = "assistant"
    content: str


class OAChoice(BaseModel):
    index: int = 0
    message: OAMessage
    finish_reason: Optional[str] = "stop"


class OAUsage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class CompletionResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: List[OAChoice]
    usage: OAUsage


class ErrorEnvelope(BaseModel):
    error: ErrorPayload


class ModelCard(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelCard]
