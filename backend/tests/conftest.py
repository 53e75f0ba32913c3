"""Shared fixtures and utilities for relay / crew session tests."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from httpx import AsyncClient, ASGITransport

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from agents.crew_session import CrewSession
from agents.narrator_agent import NarrationServiceError
from data.puzzles import Puzzle
from main import app
from models.room import Member
from routers.ai_router import get_narrator
from services.realtime import LocalLink, RealtimeClient, local_link_factory
from services.room_hub import RoomHub, hub as global_hub

T0 = 1_700_000_000_000


class FakeClock:
    """Millisecond wall clock under test control."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeNarrator:
    """Records requests; answers with a canned line or fails on demand."""

    def __init__(self, reply: str = "AI-Zeta: noted.", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.configured = True
        self.calls: List[List[Any]] = []

    async def complete(self, messages) -> str:
        self.calls.append(list(messages))
        if self.fail:
            raise NarrationServiceError("service unavailable")
        return self.reply

    async def list_models(self) -> List[str]:
        if self.fail:
            raise NarrationServiceError("service unavailable")
        return ["models/gemini-2.5-flash"]


def two_puzzles() -> List[Puzzle]:
    return [
        Puzzle(id="p0", title="First", prompt="say alpha", answer=lambda t: t.strip().lower() == "alpha",
               hints=("starts with a", "alpha")),
        Puzzle(id="p1", title="Second", prompt="say beta", answer=lambda t: t.strip().lower() == "beta",
               hints=("starts with b",)),
    ]


class DroppableLink(LocalLink):
    """In-process link whose relay side can be cut mid-session."""

    async def drop(self) -> None:
        sub, self._sub = self._sub, None
        if sub is not None:
            await self.hub.unsubscribe(self.room_id, sub.conn_id)
            sub._deliver({"type": "closed"})


def member(mid: str, ts: int, name: Optional[str] = None) -> Member:
    return Member(id=mid, display_name=name or mid, color="#9ef", join_ts=ts)


def table(*members: Member) -> Dict[str, List[Dict[str, Any]]]:
    """Presence table with one record per member, keyed by member id."""
    return {m.id: [m.to_meta()] for m in members}


async def settle(*sessions: CrewSession, rounds: int = 3) -> None:
    """Let every session dispatch its queued frames and background work."""
    for _ in range(rounds):
        for s in sessions:
            await s.settle()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hub() -> RoomHub:
    """Fresh in-process relay for each test."""
    return RoomHub()


@pytest.fixture
def narrator() -> FakeNarrator:
    return FakeNarrator()


@pytest.fixture
async def make_session(hub: RoomHub, clock: FakeClock, narrator: FakeNarrator):
    """Factory for crew sessions sharing one hub and one clock."""
    created: List[CrewSession] = []

    def _make(puzzles=None, clock_fn=None, link_factory=None, **kwargs) -> CrewSession:
        session = CrewSession(
            RealtimeClient(link_factory or local_link_factory(hub), connect_timeout=1.0),
            puzzles=puzzles or two_puzzles(),
            narrator=kwargs.pop("narrator", narrator),
            clock=clock_fn or clock,
            room_id=kwargs.pop("room_id", "MAIN"),
            autotick=False,
            **kwargs,
        )
        created.append(session)
        return session

    yield _make

    for session in created:
        await session.restart()


@pytest.fixture
async def client():
    """Async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def fake_service(narrator: FakeNarrator):
    """Route /api/ai-zeta through the fake narrator."""
    app.dependency_overrides[get_narrator] = lambda: narrator
    yield narrator
    app.dependency_overrides.pop(get_narrator, None)


@pytest.fixture(autouse=True)
def reset_global_hub():
    """Reset the relay's global hub before each test."""
    global_hub.reset()
    yield
    global_hub.reset()
