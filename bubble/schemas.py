from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


ThinkingMode = Literal["instant", "normal", "think", "deep"]
Sender = Literal["user", "ai"]
TtsVoice = Literal["Puck", "Charon", "Kore", "Fenrir", "Aoede"]


class AgentAction(str, Enum):
    SIMPLE = "SIMPLE"
    SEARCH = "SEARCH"
    DEEP_SEARCH = "DEEP_SEARCH"
    IMAGE = "IMAGE"
    PROJECT = "PROJECT"
    CANVAS = "CANVAS"
    STUDY = "STUDY"


class HistoryMessage(BaseModel):
    sender: Sender
    text: str = ""


class Attachment(BaseModel):
    name: str
    mime_type: str = "application/octet-stream"
    data: bytes = b""

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class UserProfile(BaseModel):
    display_name: str = ""
    preferred_deep_model: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    tts_voice: TtsVoice = "Puck"
    tts_speed: float = Field(default=1.0, ge=0.5, le=2.0)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("openrouter_api_key"):
            data["openrouter_api_key"] = "********"
        return data


class AgentInput(BaseModel):
    prompt: str
    attachments: List[Attachment] = Field(default_factory=list)
    api_key: Optional[str] = None
    project_id: str = ""
    chat_id: str = ""
    user_id: str = "local"
    history: List[HistoryMessage] = Field(default_factory=list)
    model: Optional[str] = None
    thinking_mode: ThinkingMode = "normal"
    profile: UserProfile = Field(default_factory=UserProfile)


class RouterDecision(BaseModel):
    action: AgentAction = AgentAction.SIMPLE
    parameters: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = 0.0

    model_config = {"extra": "allow"}


class WebSearchResult(BaseModel):
    title: str = ""
    url: str
    snippet: str = ""
    score: Optional[float] = None


class WebPage(BaseModel):
    title: str = ""
    url: str
    content: str = ""
    snippet: str = ""


class GroundingSource(BaseModel):
    url: str
    title: str = ""


class ChatMessageRecord(BaseModel):
    project_id: str
    chat_id: str
    sender: Sender = "ai"
    text: str
    grounding_metadata: Optional[List[GroundingSource]] = None

    model_config = {"frozen": True}


class AgentExecutionResult(BaseModel):
    messages: List[ChatMessageRecord]

    @property
    def text(self) -> str:
        return self.messages[-1].text if self.messages else ""


@dataclass(frozen=True)
class ActionState:
    """Current action of the turn loop plus the prompt it acts on."""

    action: AgentAction
    prompt: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    state: ActionState


@dataclass(frozen=True)
class Finalize:
    text: str


TurnOutcome = Union[Transition, Finalize]


class StartChatRequest(BaseModel):
    message: str
    conversation_id: Optional[str] = None
    project_id: Optional[str] = None
    model: Optional[str] = None
    thinking_mode: ThinkingMode = "normal"
    upload_ids: List[int] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            return data
        if "message" not in data and "prompt" in data:
            data["message"] = data.pop("prompt")
        mode_raw = str(data.get("thinking_mode", "") or "").strip().lower()
        mode_map = {
            "": "normal",
            "default": "normal",
            "standard": "normal",
            "fast": "instant",
            "thinking": "think",
            "deep_think": "deep",
        }
        data["thinking_mode"] = mode_map.get(mode_raw, mode_raw)
        model_raw = data.get("model")
        if isinstance(model_raw, str):
            data["model"] = model_raw.strip() or None
        return data

    model_config = {"protected_namespaces": ()}
