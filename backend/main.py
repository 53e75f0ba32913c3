import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Aether Station relay starting up...")
    yield
    from services.room_hub import hub
    hub.reset()
    logger.info("Relay shutting down.")


app = FastAPI(
    title="Aether Station Relay",
    version=VERSION,
    description="Presence and broadcast relay for cooperative escape-room crews, plus the AI-Zeta narration proxy",
    lifespan=lifespan,
)

_origins = list(settings.allowed_origins)
if settings.extra_origin:
    _origins.append(settings.extra_origin)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "aether-relay", "version": VERSION}


from routers.ai_router import router as ai_router
from routers.relay_router import router as relay_router

app.include_router(ai_router, prefix="/api")
app.include_router(relay_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
