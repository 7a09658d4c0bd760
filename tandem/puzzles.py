"""
Puzzle providers. The core only needs ``get_puzzle(variant, date)``, which
returns a ``PuzzleDescriptor`` or ``None`` when there is no puzzle that day.
"""
import json
from typing import Any, Dict, Optional, Protocol

from pydantic import ValidationError

from .cache import MemoryCache, puzzle_key
from .clock import is_valid_date, puzzle_number_for_date
from .errors import NetworkFatal, NetworkTransient
from .logging_utils import get_logger
from .schemas import GameVariant, PuzzleDescriptor

logger = get_logger("tandem.puzzles")

PUZZLE_CACHE_TTL = 6 * 3600


class PuzzleProvider(Protocol):
    async def get_puzzle(self, variant, date: str) -> Optional[PuzzleDescriptor]: ...


def _descriptor(variant: GameVariant, date: str, raw: Dict[str, Any]) -> PuzzleDescriptor:
    data = dict(raw)
    data.setdefault("variant", variant.value)
    data.setdefault("local_date", date)
    if not data.get("puzzle_number"):
        try:
            data["puzzle_number"] = puzzle_number_for_date(date)
        except ValueError:
            data["puzzle_number"] = 0
    return PuzzleDescriptor.model_validate(data)


class BundlePuzzleProvider:
    """Puzzles shipped with the app: ``{variant: {date: descriptor}}``."""

    def __init__(self, bundle: Optional[Dict[str, Dict[str, Any]]] = None):
        self._bundle: Dict[GameVariant, Dict[str, Any]] = {}
        for variant, puzzles in (bundle or {}).items():
            self._bundle[GameVariant.parse(variant)] = dict(puzzles)
        self._cache: Dict[tuple, PuzzleDescriptor] = {}

    @classmethod
    def from_file(cls, path: str) -> "BundlePuzzleProvider":
        with open(path, "r", encoding="utf-8") as fh:
            return cls(json.load(fh))

    def add(self, puzzle: PuzzleDescriptor) -> None:
        self._bundle.setdefault(puzzle.variant, {})[puzzle.local_date] = puzzle.model_dump(mode="json")
        self._cache.pop((puzzle.variant, puzzle.local_date), None)

    async def get_puzzle(self, variant, date: str) -> Optional[PuzzleDescriptor]:
        v = GameVariant.parse(variant)
        if not is_valid_date(date):
            return None
        key = (v, date)
        if key in self._cache:
            return self._cache[key]
        raw = self._bundle.get(v, {}).get(date)
        if raw is None:
            return None
        try:
            puzzle = _descriptor(v, date, raw)
        except ValidationError as e:
            logger.warning("puzzle_invalid", extra={"variant": v.value, "puzzle_date": date, "errors": e.errors()})
            return None
        self._cache[key] = puzzle
        return puzzle


class RemotePuzzleProvider:
    """``GET /puzzle`` on the score service; 404 means no puzzle that day."""

    def __init__(self, api, cache: Optional[MemoryCache] = None, ttl_seconds: float = PUZZLE_CACHE_TTL):
        self.api = api
        self.cache = cache if cache is not None else MemoryCache()
        self.ttl_seconds = ttl_seconds

    async def get_puzzle(self, variant, date: str) -> Optional[PuzzleDescriptor]:
        v = GameVariant.parse(variant)
        if not is_valid_date(date):
            return None
        key = puzzle_key(v.value, date)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        resp = await self.api.get_puzzle(v, date)
        if resp.status == 404:
            logger.info("puzzle_not_found", extra={"variant": v.value, "puzzle_date": date})
            return None
        if resp.status == 429 or resp.status >= 500:
            raise NetworkTransient(f"puzzle fetch failed with HTTP {resp.status}", status=resp.status)
        if not resp.ok or not isinstance(resp.json, dict):
            raise NetworkFatal(f"puzzle fetch failed with HTTP {resp.status}", status=resp.status)
        puzzle = _descriptor(v, date, resp.json)
        self.cache.set(key, puzzle, self.ttl_seconds)
        return puzzle
