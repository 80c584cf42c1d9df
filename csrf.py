import secrets
import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="csrf-token")


def new_nonce() -> str:
    return secrets.token_urlsafe(24)


def generate_csrf_token(nonce: str, max_age_hours: int = 2) -> str:
    serializer = _serializer()
    timestamp = int(time.time())
    expiry = timestamp + (max_age_hours * 3600)

    token_data = {"n": nonce, "ts": timestamp, "exp": expiry}

    return serializer.dumps(token_data)


def validate_csrf_token(
    token: Optional[str], nonce: Optional[str], max_age_hours: int = 2
) -> bool:
    if not token or not nonce:
        return False
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return False

    if not isinstance(data, dict):
        return False
    if not secrets.compare_digest(str(data.get("n", "")), nonce):
        return False

    current_time = int(time.time())
    expiry_time = data.get("exp", 0)

    if current_time > expiry_time:
        return False

    return True
