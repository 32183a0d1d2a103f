import jwt
from typing import Dict, Any
from settlement.config.settings import settings
from settlement.utils.exceptions import InvalidJWTException


def verify_jwt(token: str) -> Dict[str, Any]:
    """Verify and decode a Supabase-issued JWT token."""
    options = {"verify_aud": bool(settings.JWT_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE or None,
            options=options,
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise InvalidJWTException("JWT token has expired")
    except jwt.InvalidTokenError:
        raise InvalidJWTException("Invalid JWT token")
