"""
Local key layout. Keys are UTF-8 strings, values JSON.

    {variant}:stats:{user_scope}
    {variant}:session:{user_scope}:{puzzle_date}
    prefs:{name}

``user_scope`` is the user id when signed in, else ``anon:{device_id}``.
"""
import uuid
from typing import Optional

from .schemas import GameVariant

ANON_PREFIX = "anon:"
DEVICE_ID_KEY = "prefs:device_id"


def user_scope(user_id: Optional[str] = None, device_id: Optional[str] = None) -> str:
    if user_id:
        return str(user_id)
    if not device_id:
        raise ValueError("anonymous scope needs a device id")
    return f"{ANON_PREFIX}{device_id}"


def is_anonymous(scope: str) -> bool:
    return scope.startswith(ANON_PREFIX)


def stats_key(variant, scope: str) -> str:
    return f"{GameVariant.parse(variant).value}:stats:{scope}"


def session_key(variant, scope: str, puzzle_date: str) -> str:
    return f"{GameVariant.parse(variant).value}:session:{scope}:{puzzle_date}"


def prefs_key(name: str) -> str:
    return f"prefs:{name}"


async def device_id(storage) -> str:
    """Stable per-device id, created on first use."""
    existing = await storage.get(DEVICE_ID_KEY)
    if existing:
        return str(existing)
    new_id = uuid.uuid4().hex
    await storage.set(DEVICE_ID_KEY, new_id)
    return new_id
