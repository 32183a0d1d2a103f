from fastapi import Request
from typing import Optional
from settlement.utils.exceptions import InvalidJWTException
from settlement.utils.security import verify_jwt


class AuthContext:
    """Context object for authenticated requests."""

    def __init__(self, user_id: str, token: str, email: Optional[str] = None, role: Optional[str] = None):
        self.user_id = user_id
        self.token = token
        self.email = email
        self.role = role


def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]  # Remove "Bearer " prefix
    return None


async def get_authenticated_user(request: Request) -> AuthContext:
    """
    Authenticate the caller from a Supabase bearer JWT.

    Returns:
        AuthContext with the ``sub`` claim as user id

    Raises:
        InvalidJWTException
    """
    token = extract_bearer_token(request)
    if not token:
        raise InvalidJWTException("Missing bearer token")

    payload = verify_jwt(token)
    user_id = payload.get("sub")
    if not user_id:
        raise InvalidJWTException("Token has no subject")

    return AuthContext(
        user_id=user_id,
        token=token,
        email=payload.get("email"),
        role=payload.get("role"),
    )
