"""
JWT token utilities.

Tokens are issued by the external auth service; this module verifies them.
`create_access_token` exists for tests and local tooling.
"""

from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from backend.app.core.config import settings


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed access token.

    Example payload:
        {"sub": "alice", "user_id": 7, "role": "CLIENT"}
    """
    to_encode = data.copy()
    role = to_encode.get("role")
    if role is not None and hasattr(role, "value"):
        to_encode["role"] = role.value

    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decoded payload (sub, user_id, role, exp) if the token is valid, None otherwise."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
