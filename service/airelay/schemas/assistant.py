"""AI assistant Pydantic schemas."""
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AssistantRequest(BaseModel):
    """Request schema for assistant calls (streaming and non-streaming)."""
    message: str = Field(min_length=1, max_length=8000)
    system_prompt: str | None = Field(default=None, max_length=20000)
    quick_action_id: str | None = None
    preferred_provider: Literal["openai", "anthropic", "google"] | None = None
    task_type: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1, le=32000)

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        """Reject whitespace-only messages."""
        if not v.strip():
            raise ValueError("message must not be blank")
        return v

    model_config = ConfigDict(populate_by_name=True)


class AttemptRead(BaseModel):
    provider: str
    providerLabel: str
    outcome: str
    errorCode: str | None = None
    message: str = ""
    timestamp: float


class AssistantResponse(BaseModel):
    """Response schema for a completed non-streaming call."""
    response: str
    providerLabel: str
    provider: str
    degraded: bool = False
    taskType: str
    attempts: list[AttemptRead] = []


class ConnectedProviderRead(BaseModel):
    id: str
    provider: str
    providerLabel: str
    model: str


class ConnectedProvidersResponse(BaseModel):
    providers: list[ConnectedProviderRead] = []
    fetchError: bool = False
    errorMessage: str | None = None
