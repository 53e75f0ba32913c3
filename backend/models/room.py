from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal
from enum import Enum


class SessionPhase(str, Enum):
    LOBBY = "lobby"
    RUNNING = "running"
    WON = "won"
    LOST = "lost"


class Outcome(str, Enum):
    WON = "won"
    LOST = "lost"


TERMINAL_PHASES = {SessionPhase.WON, SessionPhase.LOST}


class Member(BaseModel):
    """
    One participant as announced through presence.
    Wire shape is {id, name, color, ts}; ts is the join time in ms since epoch.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str
    display_name: str = Field(alias="name")
    color: str = ""
    join_ts: int = Field(alias="ts")

    def to_meta(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @property
    def order_key(self):
        # Ties on join time are broken by id so every client sorts identically
        return (self.join_ts, self.id)


class RoomMembership(BaseModel):
    """Reconciled member list for one room, ordered by (join_ts, id)."""
    model_config = ConfigDict(frozen=True)

    room_id: str
    members: List[Member] = []

    def __len__(self) -> int:
        return len(self.members)

    def ids(self) -> List[str]:
        return [m.id for m in self.members]

    def position(self, member_id: str) -> Optional[int]:
        for i, m in enumerate(self.members):
            if m.id == member_id:
                return i
        return None

    def admitted(self, cap: int) -> List[Member]:
        """Members inside the room cap; anyone past it is excluded."""
        return self.members[:cap]


class SessionState(BaseModel):
    phase: SessionPhase = SessionPhase.LOBBY
    puzzle_index: int = 0
    deadline_ts: Optional[int] = None  # absolute, ms since epoch

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


class ChatEntry(BaseModel):
    role: Literal["user", "assistant"]
    text: str
    speaker: Optional[str] = None
    origin_member_id: Optional[str] = None
    color: Optional[str] = None
    at: Optional[int] = None
