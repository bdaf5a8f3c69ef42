import secrets

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

STATE_MAX_AGE_MINUTES = 15


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.state_secret, salt="oauth-state")


def generate_state() -> str:
    return _serializer().dumps({"n": secrets.token_urlsafe(16)})


def validate_state(state: str, max_age_minutes: int = STATE_MAX_AGE_MINUTES) -> bool:
    # the signed timestamp carries expiry; SignatureExpired is a BadSignature
    try:
        data = _serializer().loads(state, max_age=max_age_minutes * 60)
    except BadSignature:
        return False
    return isinstance(data, dict) and bool(data.get("n"))
