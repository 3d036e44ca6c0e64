from dataclasses import dataclass
from typing import Any, Dict

from jose import JWTError, jwt

from ..config import get_settings
from .constants import SYSTEM_ACTOR
from .errors import AuthorizationError


@dataclass(frozen=True, slots=True)
class Actor:
    """The authenticated caller of a booking operation."""

    user_id: int | None
    role: str

    @property
    def label(self) -> str:
        return SYSTEM_ACTOR if self.user_id is None else str(self.user_id)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


SYSTEM = Actor(user_id=None, role=SYSTEM_ACTOR)


def decode_token(token: str) -> Actor:
    settings = get_settings()
    try:
        payload: Dict[str, Any] = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError as exc:
        raise AuthorizationError("Could not validate credentials") from exc
    subject = payload.get("sub")
    role = payload.get("role")
    if subject is None or role not in ("client", "coach", "admin"):
        raise AuthorizationError("Could not validate credentials")
    return Actor(user_id=int(subject), role=role)
