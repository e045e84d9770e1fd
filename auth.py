from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


class AuthError(Exception):
    pass


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session-token")


def issue_session_token(user_id: str) -> str:
    """Sign a session token for ``user_id``.

    Sessions are issued by the auth provider; this mirrors its format and is
    used by tooling and tests.
    """
    return _serializer().dumps({"sub": user_id})


def verify_session_token(token: str, max_age_secs: Optional[int] = None) -> str:
    max_age = max_age_secs or get_settings().session_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise AuthError("Session expired") from exc
    except BadSignature as exc:
        raise AuthError("No valid session") from exc

    user_id = data.get("sub") if isinstance(data, dict) else None
    if not user_id or not isinstance(user_id, str):
        raise AuthError("No valid session")
    return user_id


def user_id_from_header(header_value: Optional[str]) -> str:
    if not header_value or not header_value.startswith("Bearer "):
        raise AuthError("No valid session")
    token = header_value[7:].strip()
    if not token:
        raise AuthError("No valid session")
    return verify_session_token(token)
