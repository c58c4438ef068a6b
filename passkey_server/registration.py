"""Registration ceremony: bind a new passkey to a new user."""
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from fido2 import cbor
from fido2.webauthn import AttestationConveyancePreference, ResidentKeyRequirement

from . import cose
from .config import RelyingParty
from .encoding import websafe_decode_strict, websafe_encode
from .errors import (
    Conflict,
    InvalidChallenge,
    InvalidRequest,
    MalformedResponse,
    VerificationFailed,
)
from .storage import ChallengeKind, Storage, User, normalize_email
from .tokens import SessionTokens
from .verifier import verify_registration

__all__ = ["AttestationResponse", "RegistrationCeremony"]

logger = logging.getLogger(__name__)

CHALLENGE_LENGTH = 32


@dataclass(frozen=True)
class AttestationResponse:
    """Fields of ``navigator.credentials.create()`` output, base64url encoded."""

    credential_id: Optional[str]
    client_data_json: Optional[str]
    attestation_object: Optional[str]

    def is_complete(self) -> bool:
        return all((self.credential_id, self.client_data_json, self.attestation_object))


class RegistrationCeremony:
    def __init__(self, storage: Storage, relying_party: RelyingParty, tokens: SessionTokens) -> None:
        self.storage = storage
        self.rp = relying_party
        self.tokens = tokens

    def _creation_options(self, user_id: str, email: str, name: str, challenge: str) -> Dict[str, Any]:
        return {
            "rp": {"id": self.rp.id, "name": self.rp.name},
            "user": {
                "id": websafe_encode(user_id.encode("utf-8")),
                "name": email,
                "displayName": name,
            },
            "challenge": challenge,
            "pubKeyCredParams": [
                {"type": "public-key", "alg": alg} for alg in cose.SUPPORTED_ALGORITHMS
            ],
            "timeout": self.rp.timeout_ms,
            "attestation": AttestationConveyancePreference.NONE.value,
            "excludeCredentials": [],
            "authenticatorSelection": {
                "residentKey": self.rp.resident_key.value,
                "requireResidentKey": self.rp.resident_key == ResidentKeyRequirement.REQUIRED,
                "userVerification": self.rp.user_verification.value,
            },
            "extensions": {"credProps": True},
        }

    def begin(self, email: Optional[str], name: Optional[str]) -> Dict[str, Any]:
        """Start registration for a new user and return creation options.

        The returned ``challengeId`` must be echoed back to :meth:`complete`.
        """

        if not isinstance(email, str) or not email.strip() or not isinstance(name, str) or not name.strip():
            raise InvalidRequest("Email and name are required")

        email = normalize_email(email)
        name = name.strip()
        if self.storage.get_user_by_email(email) is not None:
            raise Conflict("User with this email already exists")

        user_id = str(uuid.uuid4())
        challenge = websafe_encode(secrets.token_bytes(CHALLENGE_LENGTH))
        options = self._creation_options(user_id, email, name, challenge)

        stored = self.storage.create_challenge(
            str(uuid.uuid4()),
            challenge,
            ChallengeKind.REGISTRATION,
            subject_email=email,
            subject_id=user_id,
            subject_name=name,
        )
        options["challengeId"] = stored.id
        return options

    def complete(
        self,
        email: Optional[str],
        response: AttestationResponse,
        challenge_id: Optional[str],
    ) -> Tuple[User, str]:
        """Verify the attestation, persist user and credential, issue a token.

        The challenge is consumed before verification starts, so it cannot be
        used again whatever the outcome.
        """

        if not email or not challenge_id or not response.is_complete():
            raise InvalidRequest("Missing required fields")

        challenge = self.storage.consume_challenge(challenge_id)
        if challenge is None or challenge.kind != ChallengeKind.REGISTRATION:
            raise InvalidChallenge()

        email = normalize_email(email)
        if challenge.subject_email != email:
            raise InvalidRequest("Email mismatch")

        try:
            registered = verify_registration(
                self.rp,
                websafe_decode_strict(challenge.value, "challenge"),
                websafe_decode_strict(response.credential_id, "credentialId"),
                websafe_decode_strict(response.client_data_json, "clientDataJSON"),
                websafe_decode_strict(response.attestation_object, "attestationObject"),
            )
        except (VerificationFailed, MalformedResponse) as exc:
            logger.warning("Registration verification failed for %s: %s", email, exc)
            raise

        user, credential = self.storage.register_user_with_credential(
            user_id=challenge.subject_id or str(uuid.uuid4()),
            email=email,
            name=challenge.subject_name or email,
            record_id=str(uuid.uuid4()),
            credential_id=websafe_encode(registered.credential_id),
            public_key=websafe_encode(cbor.encode(registered.public_key)),
            algorithm=registered.algorithm,
            sign_count=registered.sign_count,
        )
        logger.info(
            "Registered user %s with %s credential %s (attestation %s).",
            user.id,
            cose.algorithm_name(credential.algorithm),
            credential.credential_id,
            registered.attestation_format,
        )
        return user, self.tokens.issue(user)
