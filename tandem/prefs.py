"""
Player preferences stored next to the core's keys.
"""
from enum import Enum

from .keys import prefs_key
from .logging_utils import get_logger

logger = get_logger("tandem.prefs")


class KeyboardLayout(str, Enum):
    QWERTY = "QWERTY"
    QWERTZ = "QWERTZ"
    AZERTY = "AZERTY"


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"
    AUTO = "auto"


KEYBOARD_LAYOUT = prefs_key("keyboard_layout")
SOUND_ENABLED = prefs_key("sound_enabled")
THEME = prefs_key("theme")


class Preferences:
    def __init__(self, storage):
        self.storage = storage

    async def _enum(self, key: str, enum_cls, default):
        raw = await self.storage.get(key)
        if raw is None:
            return default
        try:
            return enum_cls(raw)
        except ValueError:
            logger.warning("pref_invalid", extra={"key": key, "error": repr(raw)})
            return default

    async def keyboard_layout(self) -> KeyboardLayout:
        return await self._enum(KEYBOARD_LAYOUT, KeyboardLayout, KeyboardLayout.QWERTY)

    async def set_keyboard_layout(self, layout) -> None:
        await self.storage.set(KEYBOARD_LAYOUT, KeyboardLayout(layout).value)

    async def theme(self) -> Theme:
        return await self._enum(THEME, Theme, Theme.AUTO)

    async def set_theme(self, theme) -> None:
        await self.storage.set(THEME, Theme(theme).value)

    async def sound_enabled(self) -> bool:
        # stored as the strings "true"/"false"
        raw = await self.storage.get(SOUND_ENABLED)
        if raw is None:
            return True
        return str(raw).lower() == "true"

    async def set_sound_enabled(self, enabled: bool) -> None:
        await self.storage.set(SOUND_ENABLED, "true" if enabled else "false")
