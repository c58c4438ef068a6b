"""Error taxonomy shared by the ceremonies and the HTTP layer."""
from __future__ import annotations

from typing import Optional

__all__ = [
    "Conflict",
    "Internal",
    "InvalidChallenge",
    "InvalidRequest",
    "MalformedResponse",
    "NotFound",
    "PasskeyError",
    "SuspectedClone",
    "Unauthorized",
    "VerificationFailed",
]


class PasskeyError(Exception):
    """Base class for errors that terminate a request.

    ``message`` is safe to return to the client. Anything more detailed
    belongs in ``detail``, which is only ever logged.
    """

    status_code: int = 400
    message: str = "Bad request"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        if message is not None:
            self.message = message
        self.detail = detail
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class InvalidRequest(PasskeyError):
    status_code = 400
    message = "Invalid request"


class Conflict(PasskeyError):
    status_code = 409
    message = "Conflict"


class NotFound(PasskeyError):
    status_code = 404
    message = "Not found"


class InvalidChallenge(PasskeyError):
    # Same response for unknown, consumed and expired challenges.
    status_code = 400
    message = "Invalid or expired challenge"


class VerificationFailed(PasskeyError):
    status_code = 400
    message = "Verification failed"


class SuspectedClone(PasskeyError):
    """Signature counter did not advance.

    Kept separate from :class:`VerificationFailed` so that operators can
    alert on it and revoke the credential.
    """

    status_code = 400
    message = "Verification failed"


class MalformedResponse(PasskeyError):
    status_code = 400
    message = "Malformed authenticator response"


class Unauthorized(PasskeyError):
    status_code = 401
    message = "Unauthorized"


class Internal(PasskeyError):
    status_code = 500
    message = "Internal server error"
