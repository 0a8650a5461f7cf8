from fastapi import Depends, Header, HTTPException, Request, status
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.security import decode_access_token
from app.core.settings import settings
from app.db.session import get_db
from app.models.user import Role, User
from app.services.errors import Forbidden, ValidationError


def jwt_secret() -> str:
    return settings.secret_key or settings.jwt_secret or "change-me"


def get_current_user(
    db: Session = Depends(get_db), authorization: str | None = Header(default=None)
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = decode_access_token(token, secret=jwt_secret(), alg=settings.jwt_alg)
        sub = payload.get("sub")
        if not sub:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        user_id = int(sub)
    except (JWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = db.scalar(select(User).where(User.id == user_id))
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Inactive user")
    return user


def require_roles(*roles: str):
    def _inner(user: User = Depends(get_current_user)) -> User:
        if user.role.value not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user

    return _inner


require_psychologist = require_roles(Role.psychologist.value)


def resolve_psychologist_id(explicit_id: int | None, user: User) -> int:
    if user.role == Role.psychologist:
        if explicit_id is not None and explicit_id != user.id:
            raise Forbidden("Cannot act on behalf of another psychologist")
        return user.id
    if explicit_id is not None:
        return explicit_id
    raise ValidationError("psychologist_user_id is required")


def client_context(
    request: Request, request_id: str | None = Header(default=None)
) -> dict[str, str | None]:
    return {
        "request_id": request_id,
        "ip_address": request.client.host if request.client else None,
    }
