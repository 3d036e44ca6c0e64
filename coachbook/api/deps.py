from typing import Annotated, TypeVar

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..core.errors import AuthorizationError
from ..core.results import Result
from ..core.security import Actor, decode_token

T = TypeVar("T")

bearer_scheme = HTTPBearer(auto_error=False)

FAILURE_STATUS = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "conflict": status.HTTP_409_CONFLICT,
    "authorization": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "external_dependency": status.HTTP_502_BAD_GATEWAY,
}


def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Actor:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        return decode_token(credentials.credentials)
    except AuthorizationError as exc:
        raise credentials_exception from exc


def require_roles(*roles: str):
    def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return actor

    return dependency


def unwrap(result: Result[T]) -> T:
    """Return the value of a successful operation or raise the matching HTTP error."""
    if result.ok:
        return result.value
    detail = {"kind": result.kind, "message": result.message}
    if result.kind == "external_dependency":
        detail["retryable"] = result.error.retryable
    raise HTTPException(
        status_code=FAILURE_STATUS.get(result.kind, status.HTTP_400_BAD_REQUEST), detail=detail
    )
