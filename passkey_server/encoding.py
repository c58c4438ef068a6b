"""Canonical binary encoding used on the wire.

Every binary value crossing the HTTP boundary (challenges, credential ids,
client data, authenticator data, signatures, user handles) is URL-safe
base64 without padding. Decoding is strict so that two spellings of the same
bytes can never both be accepted.
"""
from __future__ import annotations

import re
from typing import Any

from fido2.utils import websafe_decode, websafe_encode

from .errors import MalformedResponse

__all__ = ["websafe_decode_strict", "websafe_encode"]

_WEBSAFE_ALPHABET = re.compile(r"^[A-Za-z0-9_-]+$")


def websafe_decode_strict(value: Any, field: str = "value") -> bytes:
    """Decode unpadded base64url, raising :class:`MalformedResponse` otherwise."""

    if not isinstance(value, str):
        raise MalformedResponse(detail=f"{field} must be a base64url string")

    candidate = value.strip()
    if not candidate or not _WEBSAFE_ALPHABET.match(candidate):
        raise MalformedResponse(detail=f"{field} is not unpadded base64url")

    # A single leftover character can never encode a whole byte.
    if len(candidate) % 4 == 1:
        raise MalformedResponse(detail=f"{field} has an invalid length")

    try:
        decoded = websafe_decode(candidate)
    except (ValueError, TypeError) as exc:
        raise MalformedResponse(detail=f"{field} could not be decoded") from exc

    # Reject non-zero trailing bits, which decode to the same bytes.
    if websafe_encode(decoded) != candidate:
        raise MalformedResponse(detail=f"{field} is not canonically encoded")
    return decoded
