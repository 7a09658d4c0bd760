import json
import logging
import os
import sys
import typing as _t
from contextvars import ContextVar
from typing import Any, Dict, Optional

# Request id of the score-service request being handled, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Request fields set by the server middleware
REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "client", "user_agent")

# Fields the core attaches through ``extra=``
CORE_FIELDS = (
    "event",
    "variant",
    "puzzle_date",
    "scope",
    "key",
    "backend",
    "attempt",
    "delay_s",
    "url",
    "errors",
    "error",
)


def record_fields(record: logging.LogRecord, names: _t.Iterable[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name in names:
        val = getattr(record, name, None)
        if val is not None:
            out[name] = val
    return out


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for the core and the score service alike."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        payload.update(record_fields(record, REQUEST_FIELDS + CORE_FIELDS))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Readable single-line output for terminals."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    GREY = "\033[90m"
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    # first digit of the HTTP status -> color
    STATUS_COLORS = {2: "\033[32m", 3: "\033[36m", 4: "\033[33m"}

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{self.RESET}" if self.use_color and color else text

    def _request(self, fields: Dict[str, Any]) -> Optional[str]:
        parts: _t.List[str] = []
        if "method" in fields:
            parts.append(self._paint(fields["method"], self.BOLD))
        if "path" in fields:
            parts.append(self._paint(fields["path"], "\033[36m"))
        status = fields.get("status")
        if isinstance(status, int):
            parts.append(self._paint(str(status), self.STATUS_COLORS.get(status // 100, "\033[31m")))
        if "duration_ms" in fields:
            parts.append(self._paint(f"{fields['duration_ms']}ms", self.GREY))
        return " ".join(parts) or None

    def _context(self, fields: Dict[str, Any]) -> Optional[str]:
        ctx = [f"{k}={v}" for k, v in fields.items() if k in CORE_FIELDS or k == "client"]
        ua = fields.get("user_agent")
        if ua:
            ctx.append('ua="%s"' % (ua if len(ua) <= 64 else ua[:61] + "..."))
        return "[" + " ".join(ctx) + "]" if ctx else None

    def format(self, record: logging.LogRecord) -> str:
        fields = record_fields(record, REQUEST_FIELDS + CORE_FIELDS)
        parts: _t.List[str] = [
            self._paint(record.levelname, self.LEVEL_COLORS.get(record.levelname, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self._paint(f"rid={rid}", "\033[35m"))
        parts.append(self._paint(record.name, "\033[34m"))
        for piece in (self._request(fields), record.getMessage() and f"- {record.getMessage()}"):
            if piece:
                parts.append(piece)
        ctx = self._context(fields)
        if ctx:
            parts.append(self._paint(ctx, self.GREY))
        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))
        return " ".join(parts)


def _isatty(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        # closed stream
        return False


def setup_logging(level: Optional[int] = None, stream=None) -> logging.Logger:
    """Configure the root logger (and uvicorn's, when the service runs).

    LOG_FORMAT=pretty|json picks the formatter; without it a TTY gets the
    pretty one. LOG_COLOR=0 turns colors off. LOG_LEVEL overrides ``level``.
    """
    stream = stream or sys.stdout
    env_level = os.getenv("LOG_LEVEL", "").upper()
    if env_level in logging._nameToLevel:
        level = logging._nameToLevel[env_level]
    level = logging.INFO if level is None else level

    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    fmt = os.getenv("LOG_FORMAT", "").lower()
    pretty = fmt == "pretty" or (not fmt and _isatty(stream))
    handler = logging.StreamHandler(stream)
    if pretty:
        handler.setFormatter(ColorFormatter(use_color=os.getenv("LOG_COLOR", "1").lower() not in ("0", "false", "no")))
    else:
        handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False
    return root


def get_logger(name: str = "tandem") -> logging.Logger:
    return logging.getLogger(name)
