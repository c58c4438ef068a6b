"""Registration and sign-in endpoints."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from flask import Blueprint, jsonify, request

from ..authentication import AssertionResponse
from ..registration import AttestationResponse
from . import get_services

bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _text(mapping: Mapping[str, Any], *keys: str) -> Optional[str]:
    """Return the first non-empty string stored under one of ``keys``."""

    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _credential_parts(payload: Mapping[str, Any]):
    """Split a request body into the credential and its ``response`` object.

    Native clients post the fields flat next to ``email`` and ``challengeId``;
    browsers post the ``PublicKeyCredential`` JSON, either flat or under
    ``credential``. Both shapes are accepted.
    """

    source = payload.get("credential")
    if not isinstance(source, Mapping):
        source = payload
    nested = source.get("response")
    if not isinstance(nested, Mapping):
        nested = {}
    return source, nested


def _attestation_response(payload: Mapping[str, Any]) -> AttestationResponse:
    source, nested = _credential_parts(payload)
    return AttestationResponse(
        credential_id=_text(source, "credentialId", "rawId", "id"),
        client_data_json=_text(nested, "clientDataJSON") or _text(source, "clientDataJSON"),
        # Older clients sent the attestation object as "authenticatorData".
        attestation_object=_text(nested, "attestationObject")
        or _text(source, "attestationObject", "authenticatorData"),
    )


def _assertion_response(payload: Mapping[str, Any]) -> AssertionResponse:
    source, nested = _credential_parts(payload)
    return AssertionResponse(
        credential_id=_text(source, "credentialId", "rawId", "id"),
        client_data_json=_text(nested, "clientDataJSON") or _text(source, "clientDataJSON"),
        authenticator_data=_text(nested, "authenticatorData") or _text(source, "authenticatorData"),
        signature=_text(nested, "signature") or _text(source, "signature"),
        user_handle=_text(nested, "userHandle") or _text(source, "userHandle"),
    )


@bp.route("/register/begin", methods=["POST"])
def register_begin():
    payload = _json_body()
    options = get_services().registration.begin(payload.get("email"), payload.get("name"))
    return jsonify(options)


@bp.route("/register/complete", methods=["POST"])
def register_complete():
    payload = _json_body()
    user, token = get_services().registration.complete(
        _text(payload, "email"),
        _attestation_response(payload),
        _text(payload, "challengeId"),
    )
    return (
        jsonify(
            {
                "success": True,
                "message": "Registration successful",
                "user": user.to_json(),
                "token": token,
            }
        ),
        201,
    )


@bp.route("/signin/begin", methods=["POST"])
def signin_begin():
    payload = _json_body()
    # An absent email selects the discoverable-credential flow.
    email = payload.get("email") if "email" in payload else None
    options = get_services().authentication.begin(email)
    return jsonify(options)


@bp.route("/signin/complete", methods=["POST"])
def signin_complete():
    payload = _json_body()
    user, token = get_services().authentication.complete(
        _assertion_response(payload),
        _text(payload, "challengeId"),
        email=_text(payload, "email"),
    )
    return jsonify(
        {
            "success": True,
            "message": "Authentication successful",
            "user": user.to_json(),
            "token": token,
        }
    )
