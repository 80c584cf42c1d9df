import logging
import os
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

_DEV_SESSION_SECRET = "dev-session-secret-change-me"
_DEV_CSRF_SECRET = "dev-csrf-secret-change-me"

DEFAULT_CATEGORY_NAMES = (
    "Groceries",
    "Rent",
    "Utilities",
    "Electricity",
    "Gas",
    "Transport",
    "Fuel",
    "School Fee",
    "Medicines",
    "Doctor",
    "Clothes",
    "Kids",
    "Other",
)


class Settings:
    def __init__(
        self,
        database_url: str,
        session_secret: str,
        csrf_secret: str,
        session_cookie_name: str,
        csrf_cookie_name: str,
        cookie_secure: bool,
        client_origin: str,
        host: str,
        port: int,
        bcrypt_rounds: int,
        default_categories: tuple[str, ...],
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.session_secret = session_secret
        self.csrf_secret = csrf_secret
        self.session_cookie_name = session_cookie_name
        self.csrf_cookie_name = csrf_cookie_name
        self.cookie_secure = cookie_secure
        self.client_origin = client_origin
        self.host = host
        self.port = port
        self.bcrypt_rounds = bcrypt_rounds
        self.default_categories = default_categories
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_names(raw: str) -> tuple[str, ...]:
    return tuple(name.strip() for name in raw.split(",") if name.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("EXPENSES_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'expenses.db'}"
    session_secret = os.getenv("EXPENSES_SESSION_SECRET", _DEV_SESSION_SECRET)
    csrf_secret = os.getenv("EXPENSES_CSRF_SECRET", _DEV_CSRF_SECRET)
    if session_secret == _DEV_SESSION_SECRET or csrf_secret == _DEV_CSRF_SECRET:
        logger.warning(
            "settings: using development signing secrets; set "
            "EXPENSES_SESSION_SECRET and EXPENSES_CSRF_SECRET in production"
        )
    default_categories_raw = os.getenv("EXPENSES_DEFAULT_CATEGORIES")
    default_categories = (
        _parse_names(default_categories_raw)
        if default_categories_raw
        else DEFAULT_CATEGORY_NAMES
    )
    return Settings(
        database_url=database_url,
        session_secret=session_secret,
        csrf_secret=csrf_secret,
        session_cookie_name=os.getenv("EXPENSES_SESSION_COOKIE", "token"),
        csrf_cookie_name=os.getenv("EXPENSES_CSRF_COOKIE", "_csrf"),
        cookie_secure=_env_flag("EXPENSES_COOKIE_SECURE", False),
        client_origin=os.getenv("EXPENSES_CLIENT_ORIGIN", "http://localhost:5173"),
        host=os.getenv("EXPENSES_HOST", "0.0.0.0"),
        port=int(os.getenv("EXPENSES_PORT", "5000")),
        bcrypt_rounds=int(os.getenv("EXPENSES_BCRYPT_ROUNDS", "12")),
        default_categories=default_categories,
        log_level=os.getenv("EXPENSES_LOG_LEVEL", "INFO").upper(),
    )
