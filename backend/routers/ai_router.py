"""
Narration HTTP endpoints (AI-Zeta proxy).

Routes:
  GET  /api/ai-zeta          liveness
  POST /api/ai-zeta          {messages: [{role, text|content}]} -> {text}
  GET  /api/gemini-diagnose  models visible to the configured key

Keeps the model API key on the relay host; clients call this through
services.ai_client.HttpNarrator.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from agents.narrator_agent import GeminiNarrator, NarrationServiceError
from models.narration import NarrationRequest, NarrationResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["narration"])

_narrator = GeminiNarrator()


def get_narrator():
    return _narrator


@router.get("/ai-zeta")
async def ai_zeta_alive():
    return {"ok": True, "message": "ai-zeta alive"}


@router.post("/ai-zeta", response_model=NarrationResponse, response_model_exclude_none=True)
async def ai_zeta(body: NarrationRequest, narrator=Depends(get_narrator)):
    if not getattr(narrator, "configured", True):
        return JSONResponse(
            status_code=500,
            content={"error": "No AI key set. Add GEMINI_API_KEY to the relay environment."},
        )
    try:
        text = await narrator.complete(body.messages)
    except NarrationServiceError as exc:
        logger.error(f"[ai-zeta] {exc}")
        return JSONResponse(status_code=502, content={"error": str(exc)})
    return NarrationResponse(text=text)


@router.get("/gemini-diagnose")
async def gemini_diagnose(narrator=Depends(get_narrator)):
    try:
        models = await narrator.list_models()
    except NarrationServiceError as exc:
        return JSONResponse(status_code=500, content={"error": str(exc)})
    return {"models": models}
