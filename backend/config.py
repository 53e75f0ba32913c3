from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    gemini_api_key: str = ""
    narrator_model: str = "gemini-2.5-flash"
    narrator_temperature: float = 0.6
    narration_timeout_seconds: float = 12.0

    # Room / session parameters shared by every client in a room
    room_id: str = "MAIN"
    max_members: int = 12
    session_seconds: int = 600
    start_buffer_ms: int = 1500  # small sync buffer before the shared clock starts
    empty_snapshot_grace_ms: int = 2500
    connect_timeout_seconds: float = 10.0
    tick_seconds: float = 1.0

    # Where clients find the relay and the narration proxy
    relay_url: str = "ws://127.0.0.1:8000"
    narrator_url: str = "http://127.0.0.1:8000"

    # CORS origins, set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    # Extra production origin; appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
