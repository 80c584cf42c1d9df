from dataclasses import dataclass
from typing import Optional

import bcrypt
from fastapi import HTTPException, Request
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

SESSION_MAX_AGE_SECS = 7 * 24 * 3600


@dataclass(frozen=True)
class SessionUser:
    id: int
    email: str


def hash_password(password: str) -> str:
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode(
        "utf-8"
    )


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session")


def issue_session_token(user_id: int, email: str) -> str:
    return _serializer().dumps({"id": user_id, "email": email})


def read_session_token(token: Optional[str]) -> Optional[SessionUser]:
    if not token:
        return None
    try:
        data = _serializer().loads(token, max_age=SESSION_MAX_AGE_SECS)
    except BadSignature:
        return None
    if not isinstance(data, dict):
        return None
    user_id = data.get("id")
    if not isinstance(user_id, int):
        return None
    return SessionUser(id=user_id, email=str(data.get("email", "")))


def optional_user(request: Request) -> Optional[SessionUser]:
    settings = get_settings()
    return read_session_token(request.cookies.get(settings.session_cookie_name))


def require_user(request: Request) -> SessionUser:
    user = optional_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user
