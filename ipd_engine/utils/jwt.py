# ipd_engine/utils/jwt.py
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt

from ipd_engine.core.config import settings


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,  # user email
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)
