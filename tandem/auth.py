from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AuthContext:
    """Who is playing. Supplied by the host; the core never signs anyone in."""

    user_id: Optional[str] = None
    access_token: Optional[str] = None
    username: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id and self.access_token)


ANONYMOUS = AuthContext()
