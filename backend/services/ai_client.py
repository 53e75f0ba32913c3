import logging
from typing import Optional, Sequence

import httpx

from agents.narrator_agent import NarrationServiceError, TurnLike, as_turns
from config import settings

logger = logging.getLogger(__name__)


class HttpNarrator:
    """Client for the relay's POST /api/ai-zeta; keeps the model key server side."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.narrator_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.narration_timeout_seconds
        self._transport = transport

    async def complete(self, messages: Sequence[TurnLike]) -> str:
        body = {"messages": [t.model_dump() for t in as_turns(messages)]}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post("/api/ai-zeta", json=body)
        except httpx.HTTPError as exc:
            raise NarrationServiceError(f"narration request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code != 200:
            raise NarrationServiceError(data.get("error") or f"HTTP {response.status_code}")
        text = (data.get("text") or "").strip()
        if not text:
            raise NarrationServiceError("narration service returned empty text")
        return text
