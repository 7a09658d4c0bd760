from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlmodel import Session

from . import crud


def get_session():
    # simple dependency that yields a session
    with Session(crud.engine) as session:
        yield session


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def optional_player_id(authorization: Optional[str] = Header(None), session: Session = Depends(get_session)) -> Optional[int]:
    """Player id from the bearer token, or None for anonymous readers."""
    token = _bearer(authorization)
    if token is None:
        return None
    return crud.verify_player_token(session, token)


def current_player_id(authorization: Optional[str] = Header(None), session: Session = Depends(get_session)) -> int:
    token = _bearer(authorization)
    pid = crud.verify_player_token(session, token) if token else None
    if pid is None:
        raise HTTPException(status_code=401, detail="authentication required", headers={"WWW-Authenticate": "Bearer"})
    return pid
