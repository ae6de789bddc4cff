import hashlib
import uuid
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.core.config import get_settings


def get_token_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="meterd-access-token",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def _max_age_seconds() -> int:
    return get_settings().access_token_max_age_days * 24 * 3600


def create_access_token(account_id: str) -> str:
    serializer = get_token_serializer()
    return serializer.dumps({"account_id": account_id})


def load_access_token(token: str) -> dict[str, Any] | None:
    serializer = get_token_serializer()
    try:
        return serializer.loads(token, max_age=_max_age_seconds())
    except (BadSignature, SignatureExpired):
        return None


def generate_charge_id() -> str:
    return str(uuid.uuid4())
