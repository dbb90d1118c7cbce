import hashlib
import hmac
from datetime import timedelta
from typing import Any, Dict

import jwt

from skillmint.core.settings import settings
from skillmint.libs.formats.datetime import now_tzinfo


class SecurityService:
    def __init__(self):
        self.secret_key = settings.SECRET_KEY
        self.algorithm = settings.ALGORITHM
        self.access_token_expire_minutes = float(settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    # 🔐 JWT
    async def create_access_token(self, sub: str) -> str:
        expire = now_tzinfo() + timedelta(minutes=self.access_token_expire_minutes)
        payload: Dict[str, Any] = {"sub": sub, "iat": now_tzinfo(), "exp": expire}
        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        return str(token)

    async def decode_access_token(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise ValueError("Token expired")
        except jwt.InvalidTokenError:
            raise ValueError("Invalid token")


# 🔏 Gateway signatures (HMAC-SHA256, hex)
def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    gateway_order_id: str, gateway_payment_id: str, signature: str, secret: str
) -> bool:
    if not (gateway_order_id and gateway_payment_id and signature and secret):
        return False
    expected = hmac_sha256_hex(secret, f"{gateway_order_id}|{gateway_payment_id}")
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def verify_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    if not (signature and secret):
        return False
    expected = hmac_sha256_hex(secret, raw_body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
