import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        session_max_age_hours: int,
        verification_max_age_hours: int,
        reset_max_age_hours: int,
        recent_login_minutes: int,
        max_failed_logins: int,
        lockout_minutes: int,
        min_password_length: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.session_max_age_hours = session_max_age_hours
        self.verification_max_age_hours = verification_max_age_hours
        self.reset_max_age_hours = reset_max_age_hours
        self.recent_login_minutes = recent_login_minutes
        self.max_failed_logins = max_failed_logins
        self.lockout_minutes = lockout_minutes
        self.min_password_length = min_password_length


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("KUE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "kue.db"
    database_url = os.getenv("KUE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("KUE_TIMEZONE", "Asia/Jakarta")
    secret_key = os.getenv(
        "KUE_SECRET_KEY",
        "3f9c1e0a7b2d48c6a5e1f07d9b3c2a18e6d4f5a0c7b9e2d1f3a6c8b0e4d7f912",
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        session_max_age_hours=int(os.getenv("KUE_SESSION_MAX_AGE_HOURS", "336")),
        verification_max_age_hours=int(
            os.getenv("KUE_VERIFICATION_MAX_AGE_HOURS", "48")
        ),
        reset_max_age_hours=int(os.getenv("KUE_RESET_MAX_AGE_HOURS", "1")),
        recent_login_minutes=int(os.getenv("KUE_RECENT_LOGIN_MINUTES", "5")),
        max_failed_logins=int(os.getenv("KUE_MAX_FAILED_LOGINS", "5")),
        lockout_minutes=int(os.getenv("KUE_LOCKOUT_MINUTES", "15")),
        min_password_length=int(os.getenv("KUE_MIN_PASSWORD_LENGTH", "6")),
    )
