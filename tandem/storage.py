"""
Local key/value persistence.

Every backend speaks the same async surface (``get``/``set``/``remove`` with
JSON values). ``FallbackStorage`` chains them: the preferred JSON file, then
the indexed SQLite store, then memory. A failing backend is demoted with a
warning and the chain ends in memory-only mode instead of raising.
"""
import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from . import config, models
from .errors import StorageUnavailable
from .logging_utils import get_logger

logger = get_logger("tandem.storage")


class Storage(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryStorage:
    name = "memory"

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {k: json.dumps(v) for k, v in (initial or {}).items()}

    async def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        # stored serialized so callers never share mutable state with the store
        self._data[key] = json.dumps(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)


class JsonFileStorage:
    """All keys in one JSON document, replaced atomically on every write."""

    name = "file"

    def __init__(self, path: str):
        self.path = path
        self._data: Optional[Dict[str, Any]] = None
        self._write_lock: Optional[asyncio.Lock] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is None:
            try:
                with open(self.path, "r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except FileNotFoundError:
                data = {}
            except (OSError, ValueError) as exc:
                raise StorageUnavailable(f"cannot read {self.path}", error=str(exc))
            self._data = data if isinstance(data, dict) else {}
        return self._data

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tandem-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise StorageUnavailable(f"cannot write {self.path}", error=str(exc))

    @property
    def _lock(self) -> asyncio.Lock:
        # created on first use so it binds to the running loop
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        return self._write_lock

    async def get(self, key: str) -> Any:
        data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = dict(await asyncio.to_thread(self._load))
            data[key] = json.loads(json.dumps(value))
            await asyncio.to_thread(self._write, data)
            self._data = data

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = dict(await asyncio.to_thread(self._load))
            if key in data:
                data.pop(key)
                await asyncio.to_thread(self._write, data)
                self._data = data


class SQLStorage:
    """Indexed store: one ``KeyValue`` row per key."""

    name = "sqlite"

    def __init__(self, url: str = "sqlite:///./tandem-local.db", engine=None):
        self.engine = engine or create_engine(url, connect_args={"check_same_thread": False} if url.startswith("sqlite") else {})
        self._ready = False

    def _ensure(self) -> None:
        if not self._ready:
            SQLModel.metadata.create_all(self.engine, tables=[models.KeyValue.__table__])
            self._ready = True

    def _get(self, key: str) -> Any:
        self._ensure()
        with Session(self.engine) as s:
            row = s.get(models.KeyValue, key)
            return None if row is None else json.loads(row.value_json)

    def _set(self, key: str, value: Any) -> None:
        self._ensure()
        with Session(self.engine) as s:
            row = s.get(models.KeyValue, key) or models.KeyValue(key=key)
            row.value_json = json.dumps(value)
            row.updated_at = datetime.now(timezone.utc)
            s.add(row)
            s.commit()

    def _remove(self, key: str) -> None:
        self._ensure()
        with Session(self.engine) as s:
            row = s.get(models.KeyValue, key)
            if row is not None:
                s.delete(row)
                s.commit()

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as exc:
            raise StorageUnavailable("indexed store failed", error=str(exc))

    async def get(self, key: str) -> Any:
        return await self._call(self._get, key)

    async def set(self, key: str, value: Any) -> None:
        await self._call(self._set, key, value)

    async def remove(self, key: str) -> None:
        await self._call(self._remove, key)


class FallbackStorage:
    """Preferred backend first; demote on failure; memory last."""

    def __init__(self, backends: List[Any]):
        if not backends or not isinstance(backends[-1], MemoryStorage):
            backends = list(backends) + [MemoryStorage()]
        self.backends = backends
        self.active = 0
        self.warnings: List[StorageUnavailable] = []

    @property
    def backend(self):
        return self.backends[self.active]

    @property
    def degraded(self) -> bool:
        """True once the chain has fallen back to memory-only mode."""
        return self.active == len(self.backends) - 1 and self.active > 0

    def _demote(self, exc: Exception) -> None:
        failed = self.backend
        err = exc if isinstance(exc, StorageUnavailable) else StorageUnavailable(str(exc))
        self.warnings.append(err)
        self.active += 1
        logger.warning(
            "storage_backend_demoted",
            extra={"backend": getattr(failed, "name", type(failed).__name__), "error": err.message},
        )
        if self.degraded:
            logger.warning("storage_memory_only")

    async def _run(self, op: str, *args):
        while True:
            try:
                return await getattr(self.backend, op)(*args)
            except (StorageUnavailable, OSError, ValueError) as exc:
                if self.active >= len(self.backends) - 1:
                    raise
                self._demote(exc)

    async def get(self, key: str) -> Any:
        return await self._run("get", key)

    async def set(self, key: str, value: Any) -> None:
        await self._run("set", key, value)

    async def remove(self, key: str) -> None:
        await self._run("remove", key)


def default_storage(path: str = config.STORAGE_PATH, db_url: str = config.STORAGE_DB_URL) -> FallbackStorage:
    """File first, then the indexed store, then memory."""
    return FallbackStorage([JsonFileStorage(path), SQLStorage(db_url), MemoryStorage()])
