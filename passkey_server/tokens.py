"""Signed session tokens handed out after a successful ceremony."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from .errors import Unauthorized
from .storage import User

__all__ = ["SessionTokens"]

ALGORITHM = "HS256"


class SessionTokens:
    """Issue and validate HS256 JWTs carrying the user id and email."""

    def __init__(
        self,
        secret: str,
        ttl: timedelta = timedelta(days=7),
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("A JWT secret is required to issue session tokens")
        self._secret = secret
        self.ttl = ttl
        self._now = now or (lambda: datetime.now(timezone.utc))

    def issue(self, user: User) -> str:
        issued_at = self._now()
        payload = {
            "userId": user.id,
            "email": user.email,
            "iat": issued_at,
            "exp": issued_at + self.ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def validate(self, token: str) -> Dict[str, Any]:
        """Return the token payload, or raise :class:`Unauthorized`."""

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthorized("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized("Invalid token", detail=str(exc)) from exc

        if not isinstance(payload.get("userId"), str):
            raise Unauthorized("Invalid token", detail="userId claim missing")
        return payload
