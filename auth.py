from datetime import datetime, timedelta, timezone
from typing import Literal

import jwt
from pydantic import BaseModel


class Principal(BaseModel):
    """Verified caller identity handed to the core by the identity service."""
    id: str
    role: Literal["user", "admin"] = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AuthError(Exception):
    pass


def create_token(sub: str, role: str, secret: str, algorithm: str = "HS256",
                 expires_min: int = 240) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "exp": now + timedelta(minutes=expires_min),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Principal:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token")
    role = payload.get("role", "user")
    return Principal(id=str(user_id), role="admin" if role == "admin" else "user")
