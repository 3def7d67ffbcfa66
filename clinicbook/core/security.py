from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from clinicbook.core.config import settings


def create_access_token(subject: str | int, expires_minutes: int | None = None) -> str:
    minutes = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    expire = datetime.now(UTC) + timedelta(minutes=minutes)
    to_encode = {"sub": str(subject), "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> str | None:
    try:
        payload = jwt.decode(
            token, settings.secret_key, algorithms=[settings.algorithm]
        )
        if payload.get("type") != "access":
            return None
        sub = payload.get("sub")
        return str(sub) if sub else None
    except JWTError:
        return None


def cron_token_valid(authorization: str | None) -> bool:
    """Scheduler calls carry `Bearer <CRON_SECRET>`; no secret configured means open."""
    if not settings.cron_secret:
        return True
    return authorization == f"Bearer {settings.cron_secret}"
