"""
Narrator Agent: AI-Zeta, the damaged station AI that talks to the crew.

Text only. A request is an ordered list of {role, text} turns, the answer
is one string. The service may be slow, unconfigured or down; game code
always goes through zeta_speak(), which bounds the wait and falls back to
a canned line so puzzle progression never blocks on narration.

Backends share one coroutine, complete(turns) -> str, raising
NarrationServiceError on any failure:
  GeminiNarrator  direct google-genai call (used by the relay's /api/ai-zeta)
  HttpNarrator    services/ai_client.py, calls /api/ai-zeta from a client
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from config import settings
from models.narration import NarrationTurn

logger = logging.getLogger(__name__)


ZETA_SYSTEM_PROMPT = (
    "You are AI-Zeta, a damaged but helpful station AI aboard the Aether Station. "
    "Speak concisely in character. Give nudges, never full answers. Stay immersive."
)

FALLBACK_LINES: Dict[str, str] = {
    "welcome": (
        "AI-Zeta: ...signal restored. Crew detected. Four systems are failing and the "
        "clock is running. Work together. I will help where my memory allows."
    ),
    "nudge": "AI-Zeta: ...static... That input was rejected. Re-read the clues.",
    "victory": "AI-Zeta: Escape vector locked. Hold on…",
    "hint": "AI-Zeta: [static] (Signal lost... try again)",
    "default": "AI-Zeta: ...static... (comms link unavailable)",
}

TurnLike = Union[NarrationTurn, Dict[str, Any]]


class NarrationServiceError(Exception):
    """Narration call failed, timed out or came back empty."""


def as_turns(messages: Sequence[TurnLike]) -> List[NarrationTurn]:
    return [m if isinstance(m, NarrationTurn) else NarrationTurn.model_validate(m) for m in messages]


def split_system(messages: Sequence[TurnLike]) -> Tuple[str, List[NarrationTurn]]:
    """System turns extend the AI-Zeta instruction; the rest is the dialogue."""
    turns = as_turns(messages)
    extra = [t.text for t in turns if t.role == "system"]
    instruction = "\n\n".join([ZETA_SYSTEM_PROMPT, *extra])
    return instruction, [t for t in turns if t.role != "system"]


# ── Prompts ────────────────────────────────────────────────────────────────────

def welcome_request() -> List[NarrationTurn]:
    return [NarrationTurn(role="user", text="Introduce the game as AI-Zeta.")]


def nudge_request(puzzle_id: str, answer: str) -> List[NarrationTurn]:
    return [NarrationTurn(
        role="user",
        text=(
            f'Wrong attempt for puzzle "{puzzle_id}": "{answer}". '
            "Provide a subtle nudge (no spoilers) in one short line, in character."
        ),
    )]


def hint_request(puzzle) -> List[NarrationTurn]:
    return [NarrationTurn(
        role="user",
        text=(
            "We are playing a puzzle game aboard Aether Station. "
            f'The current puzzle is titled "{puzzle.title}".\n'
            f"Here is its description:\n\n{puzzle.prompt}\n\n"
            "The player is asking for a helpful hint, but not the full answer. "
            "Respond as AI-Zeta would: concise, glitchy, immersive, slightly damaged AI voice."
        ),
    )]


def victory_request() -> List[NarrationTurn]:
    return [NarrationTurn(
        role="user",
        text="The crew solved the final system. Announce the escape in one short line.",
    )]


# ── Gemini backend ─────────────────────────────────────────────────────────────

class GeminiNarrator:
    """google-genai text generation (not Live API)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.narrator_model
        self.temperature = temperature if temperature is not None else settings.narrator_temperature
        self._client: Optional[Any] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if not self.api_key:
            raise NarrationServiceError("No AI key set. Add GEMINI_API_KEY to the environment.")
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def complete(self, messages: Sequence[TurnLike]) -> str:
        client = self._get_client()
        from google.genai import types

        instruction, turns = split_system(messages)
        contents = [
            types.Content(
                role="model" if t.role == "assistant" else "user",
                parts=[types.Part(text=t.text)],
            )
            for t in turns
        ]
        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(
                    system_instruction=instruction,
                    temperature=self.temperature,
                    max_output_tokens=300,
                ),
            )
        except Exception as exc:
            raise NarrationServiceError(f"Gemini error: {exc}") from exc
        text = (response.text or "").strip()
        if not text:
            raise NarrationServiceError("Gemini: empty response")
        return text

    async def list_models(self) -> List[str]:
        client = self._get_client()
        try:
            return [m.name async for m in await client.aio.models.list()]
        except Exception as exc:
            raise NarrationServiceError(f"Gemini error: {exc}") from exc


# ── Safe entry point ───────────────────────────────────────────────────────────

async def zeta_speak(
    narrator,
    messages: Sequence[TurnLike],
    fallback: Optional[str] = None,
    timeout: Optional[float] = None,
) -> str:
    """Ask the narrator; any failure resolves to a displayable fallback line."""
    fallback = fallback or FALLBACK_LINES["default"]
    if narrator is None:
        return fallback
    limit = timeout if timeout is not None else settings.narration_timeout_seconds
    try:
        text = await asyncio.wait_for(narrator.complete(messages), limit)
    except asyncio.TimeoutError:
        logger.warning(f"[narrator] timed out after {limit:.1f}s")
        return fallback
    except NarrationServiceError as exc:
        logger.warning(f"[narrator] {exc}")
        return fallback
    except Exception:
        logger.exception("[narrator] unexpected narration failure")
        return fallback
    text = (text or "").strip()
    return text or fallback
