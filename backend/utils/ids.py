import random
import re
import time
import uuid
from typing import Optional

from config import settings

ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

MEMBER_COLORS = [
    "#9ef", "#ffb4a2", "#ffd166", "#b9fbc0", "#bdb2ff", "#f1c0e8",
    "#90dbf4", "#f4a261", "#e9ff70", "#a0c4ff", "#caffbf", "#ffc6ff",
]

ROOM_ID_MAX_LEN = 16

_NON_ROOM_CHARS = re.compile(r"[^A-Z0-9]+")


def now_ms() -> int:
    """Wall-clock milliseconds since the epoch."""
    return int(time.time() * 1000)


def make_id(length: int = 10) -> str:
    """Short human-friendly id without look-alike characters (no I, O, 0, 1)."""
    return "".join(random.choice(ID_ALPHABET) for _ in range(length))


def new_member_id() -> str:
    return str(uuid.uuid4())


def random_color() -> str:
    return random.choice(MEMBER_COLORS)


def normalize_room_id(raw: Optional[str], default: Optional[str] = None) -> str:
    """
    Uppercase, keep A-Z0-9 only, bounded length.
    Falls back to the configured room when nothing usable is left.
    """
    cleaned = _NON_ROOM_CHARS.sub("", (raw or "").strip().upper())[:ROOM_ID_MAX_LEN]
    if cleaned:
        return cleaned
    fallback = default if default is not None else settings.room_id
    return _NON_ROOM_CHARS.sub("", fallback.upper())[:ROOM_ID_MAX_LEN] or "MAIN"
