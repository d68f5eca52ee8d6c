import os


def _int_setting(name: str, default: int) -> int:
    raw = str(os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./crm.db"


def get_auth_session_secret() -> str:
    for key in ("AUTH_SESSION_SECRET", "APP_SESSION_SECRET", "SECRET_KEY"):
        value = str(os.getenv(key) or "").strip()
        if value:
            return value
    return ""


def get_auth_session_ttl_seconds() -> int:
    parsed = _int_setting("AUTH_SESSION_TTL_SECONDS", 7 * 24 * 60 * 60)
    return max(15 * 60, min(30 * 24 * 60 * 60, parsed))


def get_invitation_ttl_days() -> int:
    return max(1, _int_setting("INVITATION_TTL_DAYS", 7))


def get_app_base_url() -> str:
    """
    Base URL of the web frontend, used to build links in emails (no trailing slash).
    """
    return (os.getenv("APP_BASE_URL") or os.getenv("NEXT_PUBLIC_BASE_URL") or "http://localhost:3000").rstrip("/")


def get_email_settings() -> dict:
    """
    Resend settings for transactional email (invitations).
    Values are optional; callers treat a missing key as "email disabled".
    """
    return {
        "api_key": os.getenv("RESEND_API_KEY") or "",
        "sender_name": os.getenv("EMAIL_SENDER_NAME") or "SalesFlow CRM",
        "sender_address": os.getenv("EMAIL_SENDER_ADDRESS") or "no-reply@salesflow.local",
        "api_url": os.getenv("RESEND_API_URL") or "https://api.resend.com/emails",
    }


def _flag_setting(name: str, default: bool) -> bool:
    raw = str(os.getenv(name) or "").strip().lower()
    if raw in {"1", "true", "yes", "y"}:
        return True
    if raw in {"0", "false", "no", "n"}:
        return False
    return default


def get_cors_settings() -> dict:
    """
    Browser origin policy. ALLOWED_ORIGINS is a comma-separated list; "*" or
    an empty list allows any origin.
    """
    raw = os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ALLOWED_ORIGINS") or "*"
    origins = [entry.strip() for entry in raw.split(",") if entry.strip()]
    return {
        "origins": [] if "*" in origins else origins,
        "allow_credentials": _flag_setting("CORS_ALLOW_CREDENTIALS", False),
        "allow_localhost": _flag_setting("CORS_ALLOW_LOCALHOST", True),
    }
