from datetime import datetime, timezone
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings

SESSION_SALT = "session"
VERIFY_EMAIL_SALT = "verify-email"
RESET_PASSWORD_SALT = "reset-password"


def _serializer(salt: str) -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt=salt)


def issue_token(uid: str, salt: str) -> str:
    return _serializer(salt).dumps({"u": uid})


def read_token(
    token: str, salt: str, max_age_hours: float
) -> Optional[tuple[str, datetime]]:
    """Return ``(uid, issued_at)`` for a valid token, ``None`` otherwise.

    ``issued_at`` is a naive UTC datetime so it compares directly with the
    timestamps stored on accounts.
    """
    serializer = _serializer(salt)
    try:
        data, issued_at = serializer.loads(
            token, max_age=int(max_age_hours * 3600), return_timestamp=True
        )
    except (SignatureExpired, BadSignature):
        return None

    uid = data.get("u") if isinstance(data, dict) else None
    if not uid:
        return None
    if issued_at.tzinfo is not None:
        issued_at = issued_at.astimezone(timezone.utc).replace(tzinfo=None)
    return uid, issued_at


def issue_session_token(uid: str) -> str:
    return issue_token(uid, SESSION_SALT)


def read_session_token(token: str) -> Optional[tuple[str, datetime]]:
    settings = get_settings()
    return read_token(token, SESSION_SALT, settings.session_max_age_hours)
