import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
DEBUG_MODE = _get_bool(os.getenv("DEBUG_MODE"), default=False)
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if DEBUG_MODE else "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./makerspace.db")

FALLBACK_MAKERSPACE_TIMEZONE = "America/Los_Angeles"
MAKERSPACE_TIMEZONE = os.getenv("MAKERSPACE_TIMEZONE", "").strip() or None

DEFAULT_SLOT_WINDOW_DAYS = _get_int(os.getenv("DEFAULT_SLOT_WINDOW_DAYS"), 14)
MAX_SLOT_WINDOW_DAYS = _get_int(os.getenv("MAX_SLOT_WINDOW_DAYS"), 60)
MAX_NOTES_LENGTH = _get_int(os.getenv("MAX_NOTES_LENGTH"), 600)

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:3000"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if MAX_SLOT_WINDOW_DAYS < 1:
        raise RuntimeError("MAX_SLOT_WINDOW_DAYS must be at least 1.")
