"""
Broadcast payloads exchanged between clients of one room.

Every topic has a closed schema; payloads are validated here, at the
transport boundary, before any handler sees them. All payloads are flat
JSON records and must stay bit-compatible across clients:

  chat   {from, text, at}          lobby / game chat line
  ai     {text}                    AI-Zeta narration relayed to everyone
  try    {nick, answer}            advisory copy of an answer attempt
  start  {deadlineTimestamp, members}
  state  {puzzleIndex?, outcome?}  absolute advancement, never a delta
"""
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from models.room import Member, Outcome


class Topic(str, Enum):
    CHAT = "chat"
    AI = "ai"
    TRY = "try"
    START = "start"
    STATE = "state"


class MessageValidationError(ValueError):
    """A received payload does not match its topic's schema."""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"invalid '{topic}' payload: {reason}")
        self.topic = topic
        self.reason = reason


class BasePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    topic: ClassVar[Topic]


class ChatPayload(BasePayload):
    topic: ClassVar[Topic] = Topic.CHAT

    sender: str = Field(alias="from")
    text: str
    at: int
    color: Optional[str] = None
    scope: Optional[str] = None


class AiPayload(BasePayload):
    topic: ClassVar[Topic] = Topic.AI

    text: str


class TryPayload(BasePayload):
    topic: ClassVar[Topic] = Topic.TRY

    nick: str
    answer: str


class StartPayload(BasePayload):
    topic: ClassVar[Topic] = Topic.START

    deadline_ts: int = Field(alias="deadlineTimestamp", gt=0)
    members: List[Member] = []


class StatePayload(BasePayload):
    topic: ClassVar[Topic] = Topic.STATE

    puzzle_index: Optional[int] = Field(default=None, alias="puzzleIndex", ge=0)
    outcome: Optional[Outcome] = None

    @model_validator(mode="after")
    def _carries_something(self):
        if self.puzzle_index is None and self.outcome is None:
            raise ValueError("state needs puzzleIndex or outcome")
        return self


PAYLOAD_MODELS: Dict[str, Type[BasePayload]] = {
    Topic.CHAT.value: ChatPayload,
    Topic.AI.value: AiPayload,
    Topic.TRY.value: TryPayload,
    Topic.START.value: StartPayload,
    Topic.STATE.value: StatePayload,
}


def parse_payload(topic: str, payload: Any) -> BasePayload:
    """Validate a raw payload for `topic`; raises MessageValidationError."""
    model = PAYLOAD_MODELS.get(topic)
    if model is None:
        raise MessageValidationError(topic, "unknown topic")
    if not isinstance(payload, dict):
        raise MessageValidationError(topic, "payload must be an object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MessageValidationError(topic, exc.errors()[0].get("msg", "invalid")) from exc


def dump_payload(payload: BasePayload) -> Dict[str, Any]:
    """Wire form of a payload: camelCase aliases, unset optionals dropped."""
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)
