import hashlib
import secrets
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def generate_access_token(user_id: int, email: str) -> str:
    serializer = _serializer()
    return serializer.dumps({"u": user_id, "e": email})


def verify_access_token(token: str) -> Optional[int]:
    settings = get_settings()
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=settings.access_token_ttl_secs)
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        return None
    return user_id


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def generate_reset_code() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


def hash_reset_code(email: str, code: str) -> str:
    settings = get_settings()
    payload = f"{settings.secret_key}:{email.lower()}:{code}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
