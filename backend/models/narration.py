from pydantic import AliasChoices, BaseModel, Field
from typing import List, Literal, Optional


class NarrationTurn(BaseModel):
    # "system" turns are folded into the narrator's instruction
    role: Literal["system", "user", "assistant"] = "user"
    # Older clients send chat-completion style {"content": ...}
    text: str = Field(validation_alias=AliasChoices("text", "content"))


class NarrationRequest(BaseModel):
    messages: List[NarrationTurn] = []


class NarrationResponse(BaseModel):
    text: Optional[str] = None
    error: Optional[str] = None
