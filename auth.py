import logging
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

logger = logging.getLogger(__name__)

TOKEN_MAX_AGE_HOURS = 24 * 30


def _serializer(secret: Optional[str] = None) -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(secret or settings.auth_secret, salt="api-token")


def auth_enabled() -> bool:
    return bool(get_settings().auth_secret)


def issue_token(subject: str = "owner", secret: Optional[str] = None) -> str:
    return _serializer(secret).dumps({"sub": subject})


def verify_token(
    token: str,
    secret: Optional[str] = None,
    max_age_hours: int = TOKEN_MAX_AGE_HOURS,
) -> Optional[dict]:
    try:
        data = _serializer(secret).loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return None
    if not isinstance(data, dict) or not data.get("sub"):
        return None
    return data
