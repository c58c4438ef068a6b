"""Verification of WebAuthn attestation and assertion responses.

This module holds no state. Callers hand in the bytes received from the
client together with whatever they read from storage (the challenge value,
the stored public key and counter), and get back either the verified
values or a :class:`~passkey_server.errors.PasskeyError`.

The checks follow the WebAuthn Level 2 relying party steps:

* ``clientDataJSON`` must be JSON with the expected ``type``, the exact
  challenge that was issued, and an origin from the configured allow-list.
* ``authenticatorData`` must carry the SHA-256 hash of the RP ID and the
  user-present flag (plus user-verified when policy requires it).
* For assertions the signature over ``authenticatorData ||
  SHA-256(clientDataJSON)`` must validate with the stored key, and the
  signature counter must move forward.
* For registrations the attested credential data must be present and the
  attestation statement must be well formed. Only ``none`` and ``packed``
  statements are inspected; no certificate chains are validated.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from cryptography import x509
from fido2.webauthn import (
    AttestationObject,
    AuthenticatorData,
    UserVerificationRequirement,
)

from . import cose
from .config import RelyingParty
from .encoding import websafe_decode_strict
from .errors import MalformedResponse, SuspectedClone, VerificationFailed

__all__ = [
    "AssertionResult",
    "ClientData",
    "RegisteredCredential",
    "check_sign_count",
    "parse_attestation_object",
    "parse_authenticator_data",
    "parse_client_data",
    "verify_attestation_statement",
    "verify_authentication",
    "verify_registration",
]

TYPE_CREATE = "webauthn.create"
TYPE_GET = "webauthn.get"


@dataclass(frozen=True)
class ClientData:
    type: str
    challenge: bytes
    origin: str
    cross_origin: bool
    hash: bytes


@dataclass(frozen=True)
class RegisteredCredential:
    credential_id: bytes
    public_key: Dict[int, Any]
    algorithm: int
    sign_count: int
    aaguid: bytes
    attestation_format: str
    user_verified: bool


@dataclass(frozen=True)
class AssertionResult:
    sign_count: int
    user_verified: bool


def parse_client_data(raw: bytes) -> ClientData:
    try:
        data = json.loads(bytes(raw).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedResponse(detail="clientDataJSON is not valid JSON") from exc

    if not isinstance(data, dict):
        raise MalformedResponse(detail="clientDataJSON must be a JSON object")

    for key in ("type", "challenge", "origin"):
        if not isinstance(data.get(key), str):
            raise MalformedResponse(detail=f"clientDataJSON.{key} is missing")

    return ClientData(
        type=data["type"],
        challenge=websafe_decode_strict(data["challenge"], "clientDataJSON.challenge"),
        origin=data["origin"],
        cross_origin=bool(data.get("crossOrigin", False)),
        hash=hashlib.sha256(raw).digest(),
    )


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    try:
        return AuthenticatorData(bytes(raw))
    except Exception as exc:
        raise MalformedResponse(detail="authenticatorData could not be parsed") from exc


def parse_attestation_object(raw: bytes) -> AttestationObject:
    try:
        attestation_object = AttestationObject(bytes(raw))
    except Exception as exc:
        raise MalformedResponse(detail="attestationObject could not be parsed") from exc

    if not isinstance(attestation_object.fmt, str):
        raise MalformedResponse(detail="attestationObject.fmt must be a string")
    if not isinstance(attestation_object.att_stmt, Mapping):
        raise MalformedResponse(detail="attestationObject.attStmt must be a map")
    return attestation_object


def _verify_client_data(
    client_data: ClientData, expected_type: str, expected_challenge: bytes, rp: RelyingParty
) -> None:
    if client_data.type != expected_type:
        raise VerificationFailed(detail=f"unexpected clientDataJSON.type {client_data.type!r}")

    if not hmac.compare_digest(client_data.challenge, expected_challenge):
        raise VerificationFailed(detail="challenge does not match")

    if client_data.origin not in rp.allowed_origins:
        raise VerificationFailed(detail=f"origin {client_data.origin!r} is not allowed")


def _verify_authenticator_data(auth_data: AuthenticatorData, rp: RelyingParty) -> None:
    if not hmac.compare_digest(bytes(auth_data.rp_id_hash), rp.id_hash):
        raise VerificationFailed(detail="RP ID hash does not match")

    if not auth_data.is_user_present():
        raise VerificationFailed(detail="user presence flag not set")

    if (
        rp.user_verification == UserVerificationRequirement.REQUIRED
        and not auth_data.is_user_verified()
    ):
        raise VerificationFailed(detail="user verification required but not performed")


def verify_attestation_statement(
    attestation_object: AttestationObject,
    client_data_hash: bytes,
    credential_public_key: Mapping[int, Any],
) -> None:
    """Validate the statement of a ``none`` or ``packed`` attestation.

    Other formats are accepted as-is: attestation is only used with
    "none"-equivalent trust, so their statements are not inspected.
    """

    fmt = attestation_object.fmt
    att_stmt = attestation_object.att_stmt

    if fmt == "none":
        if att_stmt:
            raise VerificationFailed(detail="none attestation with a non-empty statement")
        return

    if fmt != "packed":
        return

    alg = att_stmt.get("alg")
    sig = att_stmt.get("sig")
    if not isinstance(alg, int) or not isinstance(sig, bytes):
        raise VerificationFailed(detail="packed attestation is missing alg or sig")

    message = bytes(attestation_object.auth_data) + client_data_hash
    x5c = att_stmt.get("x5c")

    if x5c is None:
        # Self attestation: signed by the credential key itself.
        if alg != credential_public_key.get(3):
            raise VerificationFailed(detail="self attestation alg does not match credential key")
        valid = cose.verify_signature(credential_public_key, message, sig)
    else:
        if not isinstance(x5c, list) or not x5c or not isinstance(x5c[0], bytes):
            raise VerificationFailed(detail="packed attestation x5c is malformed")
        try:
            certificate = x509.load_der_x509_certificate(x5c[0])
        except ValueError as exc:
            raise VerificationFailed(detail="attestation certificate is malformed") from exc
        valid = cose.verify_with_certificate_key(certificate.public_key(), alg, message, sig)

    if not valid:
        raise VerificationFailed(detail="packed attestation signature is invalid")


def verify_registration(
    rp: RelyingParty,
    expected_challenge: bytes,
    credential_id: bytes,
    client_data_json: bytes,
    attestation_object: bytes,
) -> RegisteredCredential:
    """Verify an attestation response and return the credential to store."""

    client_data = parse_client_data(client_data_json)
    _verify_client_data(client_data, TYPE_CREATE, expected_challenge, rp)

    attestation = parse_attestation_object(attestation_object)
    auth_data = attestation.auth_data
    _verify_authenticator_data(auth_data, rp)

    credential_data = auth_data.credential_data
    if not auth_data.is_attested() or credential_data is None:
        raise VerificationFailed(detail="no attested credential data")

    if not hmac.compare_digest(bytes(credential_data.credential_id), credential_id):
        raise VerificationFailed(detail="credential id does not match attested credential")

    public_key = dict(credential_data.public_key)
    algorithm = public_key.get(3)
    # Rejects unsupported algorithms and keys that do not fit their algorithm.
    cose.parse_key(public_key)

    verify_attestation_statement(attestation, client_data.hash, public_key)

    return RegisteredCredential(
        credential_id=bytes(credential_data.credential_id),
        public_key=public_key,
        algorithm=algorithm,
        sign_count=auth_data.counter,
        aaguid=bytes(credential_data.aaguid),
        attestation_format=attestation.fmt,
        user_verified=auth_data.is_user_verified(),
    )


def check_sign_count(stored: int, received: int) -> None:
    """Enforce the signature counter policy.

    Authenticators without a counter always report 0; when both values are
    0 there is nothing to compare. Otherwise the counter must strictly
    increase, and anything else is treated as a cloned authenticator.
    """

    if stored == 0 and received == 0:
        return
    if received <= stored:
        raise SuspectedClone(detail=f"sign count {received} does not exceed stored {stored}")


def verify_authentication(
    rp: RelyingParty,
    expected_challenge: bytes,
    client_data_json: bytes,
    authenticator_data: bytes,
    signature: bytes,
    public_key: Mapping[int, Any],
    stored_sign_count: int,
    user_handle: Optional[bytes] = None,
    expected_user_handle: Optional[bytes] = None,
) -> AssertionResult:
    """Verify an assertion response against a stored credential."""

    client_data = parse_client_data(client_data_json)
    _verify_client_data(client_data, TYPE_GET, expected_challenge, rp)

    auth_data = parse_authenticator_data(authenticator_data)
    _verify_authenticator_data(auth_data, rp)

    if user_handle is not None and expected_user_handle is not None:
        if not hmac.compare_digest(user_handle, expected_user_handle):
            raise VerificationFailed(detail="user handle does not match credential owner")

    if not cose.verify_signature(public_key, bytes(auth_data) + client_data.hash, signature):
        raise VerificationFailed(detail="signature is invalid")

    check_sign_count(stored_sign_count, auth_data.counter)

    return AssertionResult(
        sign_count=auth_data.counter,
        user_verified=auth_data.is_user_verified(),
    )
