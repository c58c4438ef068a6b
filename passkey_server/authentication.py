"""Authentication ceremony: prove possession of a registered passkey."""
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .config import RelyingParty
from .encoding import websafe_decode_strict, websafe_encode
from .errors import (
    InvalidChallenge,
    InvalidRequest,
    MalformedResponse,
    NotFound,
    SuspectedClone,
    VerificationFailed,
)
from .storage import ChallengeKind, Credential, Storage, User, normalize_email
from .tokens import SessionTokens
from .verifier import verify_authentication

__all__ = ["AssertionResponse", "AuthenticationCeremony"]

logger = logging.getLogger(__name__)

CHALLENGE_LENGTH = 32


@dataclass(frozen=True)
class AssertionResponse:
    """Fields of ``navigator.credentials.get()`` output, base64url encoded."""

    credential_id: Optional[str]
    client_data_json: Optional[str]
    authenticator_data: Optional[str]
    signature: Optional[str]
    user_handle: Optional[str] = None

    def is_complete(self) -> bool:
        return all(
            (self.credential_id, self.client_data_json, self.authenticator_data, self.signature)
        )


class AuthenticationCeremony:
    def __init__(self, storage: Storage, relying_party: RelyingParty, tokens: SessionTokens) -> None:
        self.storage = storage
        self.rp = relying_party
        self.tokens = tokens

    def _allow_list_entry(self, credential: Credential) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"id": credential.credential_id, "type": "public-key"}
        if self.rp.transports:
            entry["transports"] = [transport.value for transport in self.rp.transports]
        return entry

    def begin(self, email: Optional[str] = None) -> Dict[str, Any]:
        """Start sign-in and return request options.

        Without an email the allow-list is left empty so that the
        authenticator can offer a discoverable credential; the user is then
        resolved from the credential at completion.
        """

        allow_credentials = []
        subject_email = None

        if email is not None:
            if not isinstance(email, str) or not email.strip():
                raise InvalidRequest("Email is required")
            subject_email = normalize_email(email)

            user = self.storage.get_user_by_email(subject_email)
            if user is None:
                raise NotFound("User not found")

            credentials = self.storage.get_credentials_by_user_id(user.id)
            if not credentials:
                raise InvalidRequest("No credentials found for user")
            allow_credentials = [self._allow_list_entry(credential) for credential in credentials]

        challenge = websafe_encode(secrets.token_bytes(CHALLENGE_LENGTH))
        stored = self.storage.create_challenge(
            str(uuid.uuid4()),
            challenge,
            ChallengeKind.AUTHENTICATION,
            subject_email=subject_email,
        )
        return {
            "challenge": challenge,
            "timeout": self.rp.timeout_ms,
            "rpId": self.rp.id,
            "allowCredentials": allow_credentials,
            "userVerification": self.rp.user_verification.value,
            "challengeId": stored.id,
        }

    def _resolve(self, response: AssertionResponse, expected_email: Optional[str]) -> Tuple[Credential, User]:
        # Decoding first rejects non-canonical spellings of a stored id.
        websafe_decode_strict(response.credential_id, "credentialId")

        credential = self.storage.get_credential_by_credential_id(response.credential_id)
        if credential is None:
            raise InvalidRequest("Invalid credentials", detail="unknown credential id")

        user = self.storage.get_user_by_id(credential.user_id)
        if user is None:
            raise InvalidRequest("Invalid credentials", detail="credential has no owner")
        if expected_email is not None and user.email != expected_email:
            raise InvalidRequest("Invalid credentials", detail="credential belongs to another user")
        return credential, user

    def complete(
        self,
        response: AssertionResponse,
        challenge_id: Optional[str],
        email: Optional[str] = None,
    ) -> Tuple[User, str]:
        """Verify the assertion, advance the counter and issue a token.

        The challenge is consumed before any other check, so a failed or
        replayed completion always leaves it unusable.
        """

        if not challenge_id or not response.is_complete():
            raise InvalidRequest("Missing required fields")

        challenge = self.storage.consume_challenge(challenge_id)
        if challenge is None or challenge.kind != ChallengeKind.AUTHENTICATION:
            raise InvalidChallenge()

        expected_email = challenge.subject_email
        if email:
            email = normalize_email(email)
            if expected_email is not None and expected_email != email:
                raise InvalidRequest("Email mismatch")
            expected_email = email

        try:
            credential, user = self._resolve(response, expected_email)
        except InvalidRequest as exc:
            logger.warning("Sign-in rejected: %s", exc)
            raise

        user_handle = None
        if response.user_handle:
            user_handle = websafe_decode_strict(response.user_handle, "userHandle")

        try:
            result = verify_authentication(
                self.rp,
                websafe_decode_strict(challenge.value, "challenge"),
                websafe_decode_strict(response.client_data_json, "clientDataJSON"),
                websafe_decode_strict(response.authenticator_data, "authenticatorData"),
                websafe_decode_strict(response.signature, "signature"),
                credential.cose_key,
                credential.sign_count,
                user_handle=user_handle,
                expected_user_handle=user.id.encode("utf-8"),
            )
        except SuspectedClone as exc:
            logger.warning(
                "Suspected cloned credential %s for user %s: %s",
                credential.credential_id,
                user.id,
                exc,
            )
            raise
        except (VerificationFailed, MalformedResponse) as exc:
            logger.warning("Sign-in verification failed for user %s: %s", user.id, exc)
            raise

        if not self.storage.update_counter(
            credential.credential_id, result.sign_count, expected=credential.sign_count
        ):
            # Another completion moved the counter after we read it.
            logger.warning(
                "Suspected cloned credential %s for user %s: counter changed concurrently",
                credential.credential_id,
                user.id,
            )
            raise SuspectedClone(detail="sign count changed during verification")

        logger.info("User %s signed in with credential %s.", user.id, credential.credential_id)
        return user, self.tokens.issue(user)
