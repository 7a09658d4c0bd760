from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel, Session, create_engine
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, Optional
import json
import logging
import re
import time
import uuid
from collections import deque

from . import config, crud, models  # noqa: F401
from .cache import (
    MemoryCache,
    cache_leaderboard,
    daily_leaderboard_key,
    invalidate_daily_leaderboard,
    invalidate_streak_leaderboard,
    streak_leaderboard_key,
)
from .clock import is_valid_date
from .deps import current_player_id, get_session, optional_player_id
from .errors import InvariantViolation
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .schemas import GameVariant


class SlidingWindowLimiter:
    """Per-route, per-client request counter over a sliding window."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._hits: Dict[tuple, deque] = {}

    def clear(self) -> None:
        self._hits.clear()

    def allow(self, route: str, client: str, limit: int, window: float) -> bool:
        now = self._clock()
        hits = self._hits.setdefault((route, client), deque())
        while hits and hits[0] <= now - window:
            hits.popleft()
        if len(hits) >= limit:
            return False
        hits.append(now)
        return True


_RATE_LIMIT_STORE = SlidingWindowLimiter()


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    """FastAPI dependency answering 429 once a client exceeds ``max_requests``."""
    def dependency(request: Request):
        client = request.client.host if request.client else "unknown"
        if not _RATE_LIMIT_STORE.allow(request.url.path, client, max_requests, window_seconds):
            logger.warning("rate_limited", extra={"path": request.url.path, "client": client})
            raise HTTPException(status_code=429, detail=f"Too many requests: {max_requests} per {window_seconds}s allowed")
    return dependency


setup_logging(logging.INFO)
logger = get_logger("tandem.server")
app = FastAPI(title="Tandem Scores")

# Leaderboard pages without the requester's own rank; rank is looked up per request
_LEADERBOARD_CACHE = MemoryCache()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    ctx_token = request_id_ctx.set(rid)
    started = time.perf_counter()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        response.headers["X-Request-ID"] = rid
        return response
    except Exception:
        logger.exception("unhandled_error", extra={"method": request.method, "path": request.url.path})
        raise
    finally:
        level = logging.WARNING if status >= 500 else logging.INFO
        logger.log(level, "request", extra={
            "method": request.method,
            "path": request.url.path,
            "status": status,
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            "client": request.client.host if request.client else "-",
            "user_agent": request.headers.get("user-agent"),
        })
        request_id_ctx.reset(ctx_token)


app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content={
            "detail": json.loads(json.dumps(exc.errors(), default=str)),
            "message": "Input validation failed"
        }
    )


@app.on_event("startup")
def on_startup():
    from .migrations import run_migrations

    if crud.engine is not None:
        return
    db_path = config.DATABASE_URL
    if not db_path.startswith("sqlite"):
        engine = create_engine(db_path, echo=False, pool_pre_ping=True, pool_size=10, max_overflow=20, pool_recycle=1800)
    else:
        engine = create_engine(db_path, echo=False, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(engine)
    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})
    crud.engine = engine


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    return JSONResponse({"cache_stats": _LEADERBOARD_CACHE.get_stats(), "status": "ok"})


# request bodies ----------------------------------------------------------------

_USERNAME_RE = re.compile(r'^[a-zA-Z0-9_-]+$')


def _parse_variant(v: str) -> str:
    try:
        return GameVariant.parse(v).value
    except ValueError:
        raise ValueError(f"Unknown game type: {v}")


class PlayerCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=20)
    password: str = Field(..., min_length=8, max_length=128)
    avatar_ref: Optional[str] = Field(None, max_length=200, alias="avatarRef")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Username cannot be empty')
        if not _USERNAME_RE.match(v):
            raise ValueError('Username can only contain letters, numbers, underscore, and hyphen')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if not re.search(r'[a-z]', v) or not re.search(r'[A-Z]', v) or not re.search(r'\d', v):
            raise ValueError('Password must mix lowercase, uppercase and digits')
        return v


class TokenRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=20)
    password: str = Field(..., min_length=1, max_length=128)


class DailyScoreRequest(BaseModel):
    game_type: str = Field(..., alias="gameType")
    puzzle_date: str = Field(..., alias="puzzleDate")
    score: int = Field(..., ge=0, le=86400)  # seconds, 0 to 24 hours
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator('game_type')
    @classmethod
    def validate_game_type(cls, v):
        return _parse_variant(v)

    @field_validator('puzzle_date')
    @classmethod
    def validate_date(cls, v):
        if not is_valid_date(v):
            raise ValueError('Date must be in YYYY-MM-DD format')
        return v

    @field_validator('metadata')
    @classmethod
    def validate_metadata(cls, v):
        mistakes = v.get('mistakes', 0)
        if not isinstance(mistakes, int) or isinstance(mistakes, bool) or mistakes < 0:
            raise ValueError('metadata.mistakes must be a non-negative integer')
        return {'mistakes': mistakes}


class StreakScoreRequest(BaseModel):
    game_type: str = Field(..., alias="gameType")
    score: int = Field(..., ge=0, le=100000)  # days

    model_config = ConfigDict(populate_by_name=True)

    @field_validator('game_type')
    @classmethod
    def validate_game_type(cls, v):
        return _parse_variant(v)


class StatsPut(BaseModel):
    stats: Dict[str, Any]


# query parameter checks ---------------------------------------------------------

def _validate_game_param(game: str) -> str:
    try:
        return GameVariant.parse(game).value
    except ValueError:
        raise HTTPException(status_code=400, detail="Unknown game type")


def _validate_date_param(date: str) -> str:
    if not is_valid_date(date):
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")
    return date


def _validate_limit_param(limit: int) -> int:
    if limit < 1 or limit > config.LEADERBOARD_MAX_LIMIT:
        raise HTTPException(status_code=400, detail=f"Limit must be between 1 and {config.LEADERBOARD_MAX_LIMIT}")
    return limit


# auth ---------------------------------------------------------------------------

@app.post("/auth/player", status_code=201)
def create_player(
    body: PlayerCreate,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=10, window_seconds=60))
):
    p = crud.create_player(session, body.username, body.password, body.avatar_ref)
    if not p:
        raise HTTPException(status_code=400, detail="username exists")
    logger.info("player_created", extra={"scope": str(p.id)})
    return {"id": str(p.id), "username": p.username, "token": crud.sign_player_token(session, p.id)}


@app.post("/auth/token")
def issue_token(
    body: TokenRequest,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=10, window_seconds=60))
):
    p = crud.authenticate(session, body.username, body.password)
    if not p:
        raise HTTPException(status_code=401, detail="invalid credentials")
    return {"id": str(p.id), "username": p.username, "token": crud.sign_player_token(session, p.id)}


@app.delete("/account")
def delete_account(player_id: int = Depends(current_player_id), session: Session = Depends(get_session)):
    crud.delete_account(session, player_id)
    _LEADERBOARD_CACHE.clear()
    logger.info("account_deleted", extra={"event": str(player_id)})
    return {"success": True}


# leaderboards -------------------------------------------------------------------

@app.post("/leaderboard/daily")
def submit_daily(
    body: DailyScoreRequest,
    player_id: int = Depends(current_player_id),
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=30, window_seconds=60))
):
    row, improved = crud.submit_daily_score(
        session, player_id, body.game_type, body.puzzle_date, body.score, body.metadata.get('mistakes', 0)
    )
    if improved:
        invalidate_daily_leaderboard(_LEADERBOARD_CACHE, body.game_type, body.puzzle_date)
    rank = crud.daily_rank(session, body.game_type, body.puzzle_date, row.seconds)
    logger.info(
        "daily_score",
        extra={"variant": body.game_type, "puzzle_date": body.puzzle_date, "event": "improved" if improved else "kept"},
    )
    return {"success": True, "rank": rank}


@app.get("/leaderboard/daily")
def daily_leaderboard(
    game: str,
    date: str,
    limit: int = config.LEADERBOARD_DEFAULT_LIMIT,
    player_id: Optional[int] = Depends(optional_player_id),
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=60, window_seconds=60))
):
    variant = _validate_game_param(game)
    actual_date = _validate_date_param(date)
    limit = _validate_limit_param(limit)

    key = daily_leaderboard_key(variant, actual_date, limit)
    leaders = _LEADERBOARD_CACHE.get(key)
    if leaders is None:
        leaders = crud.get_daily_leaderboard(session, variant, actual_date, limit)
        cache_leaderboard(_LEADERBOARD_CACHE, key, leaders)

    user_rank = None
    if player_id is not None:
        mine = crud.get_daily_score(session, player_id, variant, actual_date)
        if mine is not None:
            user_rank = crud.daily_rank(session, variant, actual_date, mine.seconds)
    return {"success": True, "leaderboard": leaders, "userRank": user_rank}


@app.post("/leaderboard/streak")
def submit_streak(
    body: StreakScoreRequest,
    player_id: int = Depends(current_player_id),
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=30, window_seconds=60))
):
    row, improved = crud.submit_streak_score(session, player_id, body.game_type, body.score)
    if improved:
        invalidate_streak_leaderboard(_LEADERBOARD_CACHE, body.game_type)
    return {"success": True, "rank": crud.streak_rank(session, body.game_type, row.days)}


@app.get("/leaderboard/streak")
def streak_leaderboard(
    game: str,
    limit: int = config.LEADERBOARD_DEFAULT_LIMIT,
    player_id: Optional[int] = Depends(optional_player_id),
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=60, window_seconds=60))
):
    variant = _validate_game_param(game)
    limit = _validate_limit_param(limit)

    key = streak_leaderboard_key(variant, limit)
    leaders = _LEADERBOARD_CACHE.get(key)
    if leaders is None:
        leaders = crud.get_streak_leaderboard(session, variant, limit)
        cache_leaderboard(_LEADERBOARD_CACHE, key, leaders)

    user_entry = crud.get_player_streak_entry(session, player_id, variant) if player_id is not None else None
    return {"success": True, "leaderboard": leaders, "userEntry": user_entry}


# puzzles and stats -------------------------------------------------------------

@app.get("/puzzle")
def get_puzzle(variant: str, date: str, session: Session = Depends(get_session)):
    v = _validate_game_param(variant)
    actual_date = _validate_date_param(date)
    row = crud.get_puzzle(session, v, actual_date)
    if row is None:
        raise HTTPException(status_code=404, detail="no puzzle for this date")
    return crud.puzzle_payload(row)


@app.get("/stats/{game_type}")
def get_stats(game_type: str, player_id: int = Depends(current_player_id), session: Session = Depends(get_session)):
    variant = _validate_game_param(game_type)
    row = crud.get_stats_row(session, player_id, variant)
    if row is None:
        return {"success": True, "stats": None, "updatedAt": None}
    return {
        "success": True,
        "stats": json.loads(row.stats_json or "{}"),
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


@app.put("/stats/{game_type}")
def put_stats(
    game_type: str,
    body: StatsPut,
    player_id: int = Depends(current_player_id),
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=60, window_seconds=60))
):
    variant = _validate_game_param(game_type)
    try:
        row = crud.put_stats(session, player_id, variant, body.stats)
    except InvariantViolation as e:
        logger.warning("stats_rejected", extra={"variant": variant, "error": e.message})
        raise HTTPException(status_code=400, detail=e.message)
    return {
        "success": True,
        "gamesPlayed": row.games_played,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }
