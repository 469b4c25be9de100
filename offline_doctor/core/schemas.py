# offline_doctor/core/schemas.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


class Conversation(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class Message(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    timestamp: datetime


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None


class ChatResponse(BaseModel):
    message: str
    conversation_id: str
    message_id: str
    user_message_id: str


class TitleIn(BaseModel):
    title: str = Field(..., min_length=1)


class EngineInitIn(BaseModel):
    model_filename: str = Field(..., min_length=1)

    model_config = {"protected_namespaces": ()}


class EngineStatus(BaseModel):
    state: str
    ready: bool
    model_path: Optional[str] = None
    port: Optional[int] = None
    pid: Optional[int] = None


class ModelInfo(BaseModel):
    name: str
    size: int
    description: str
    download_url: str
    filename: str
    is_downloaded: bool = False


class CompletionRequest(BaseModel):
    prompt: str
    n_predict: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1
    stop: List[str] = Field(default_factory=lambda: ["Human:", "User:", "\n\n"])


class CompletionResponse(BaseModel):
    content: Optional[str] = None
