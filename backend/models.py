"""
Pydantic models for RPC params and HTTP responses.
"""

from typing import Optional, Union

from pydantic import BaseModel, Field

from config import WS_MAX_PROMPT_LENGTH


class EmptyParams(BaseModel):
    pass


class RunParams(BaseModel):
    prompt: str = Field(min_length=1, max_length=WS_MAX_PROMPT_LENGTH)
    model_index: Optional[int] = Field(default=None, ge=0)


class SetModelParams(BaseModel):
    model_index: int = Field(ge=0)


class TopicParams(BaseModel):
    topic: str = Field(min_length=1, max_length=100)


class ExecutionsParams(BaseModel):
    task_id: Optional[str] = Field(default=None, max_length=100)


class RpcRequest(BaseModel):
    id: Optional[Union[int, str]] = None
    method: str = Field(min_length=1, max_length=100)
    params: dict = Field(default_factory=dict)


class ModelInfo(BaseModel):
    name: str
    id: str
    description: str = ""
    supports_agent: bool = True


class HealthResponse(BaseModel):
    status: str
    ready: bool
    task: Optional[dict] = None
