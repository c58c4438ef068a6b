"""COSE public keys for the algorithms this relying party accepts.

ES256, EdDSA, RS256 and PS256 are the :mod:`fido2.cose` classes. PS384 and
PS512 are added here as :class:`~fido2.cose.CoseKey` subclasses, which makes
them available to ``CoseKey.for_alg`` and ``CoseKey.parse``.
"""
from __future__ import annotations

from typing import Any, Mapping, Sequence, Type

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from fido2.cose import ES256, PS256, RS256, CoseKey, EdDSA
from fido2.utils import bytes2int, int2bytes

from .errors import MalformedResponse

__all__ = [
    "PS384",
    "PS512",
    "SUPPORTED_ALGORITHMS",
    "algorithm_name",
    "parse_key",
    "verify_signature",
    "verify_with_certificate_key",
]


def _verify_pss(key: CoseKey, hash_alg: hashes.HashAlgorithm, message: bytes, signature: bytes) -> None:
    rsa.RSAPublicNumbers(bytes2int(key[-2]), bytes2int(key[-1])).public_key().verify(
        signature,
        message,
        padding.PSS(mgf=padding.MGF1(hash_alg), salt_length=padding.PSS.MAX_LENGTH),
        hash_alg,
    )


def _rsa_cose(cls: Type[CoseKey], public_key: rsa.RSAPublicKey) -> CoseKey:
    assert isinstance(public_key, rsa.RSAPublicKey)  # nosec
    pn = public_key.public_numbers()
    return cls({1: 3, 3: cls.ALGORITHM, -1: int2bytes(pn.n), -2: int2bytes(pn.e)})


class PS384(CoseKey):
    ALGORITHM = -38
    _HASH_ALG = hashes.SHA384()

    def verify(self, message, signature):
        _verify_pss(self, self._HASH_ALG, message, signature)

    @classmethod
    def from_cryptography_key(cls, public_key):
        return _rsa_cose(cls, public_key)


class PS512(CoseKey):
    ALGORITHM = -39
    _HASH_ALG = hashes.SHA512()

    def verify(self, message, signature):
        _verify_pss(self, self._HASH_ALG, message, signature)

    @classmethod
    def from_cryptography_key(cls, public_key):
        return _rsa_cose(cls, public_key)


_ALGORITHMS: Sequence[Type[CoseKey]] = (ES256, RS256, EdDSA, PS256, PS384, PS512)

# Advertised in pubKeyCredParams, in order of preference.
SUPPORTED_ALGORITHMS: Sequence[int] = tuple(cls.ALGORITHM for cls in _ALGORITHMS)

_NAMES = {cls.ALGORITHM: cls.__name__ for cls in _ALGORITHMS}

# kty (and crv where the key type has one) each algorithm requires.
_KEY_SHAPES = {
    ES256.ALGORITHM: (2, 1),
    EdDSA.ALGORITHM: (1, 6),
    RS256.ALGORITHM: (3, None),
    PS256.ALGORITHM: (3, None),
    PS384.ALGORITHM: (3, None),
    PS512.ALGORITHM: (3, None),
}

_CRYPTOGRAPHY_KEY_TYPES = {
    ES256.ALGORITHM: ec.EllipticCurvePublicKey,
    EdDSA.ALGORITHM: ed25519.Ed25519PublicKey,
    RS256.ALGORITHM: rsa.RSAPublicKey,
    PS256.ALGORITHM: rsa.RSAPublicKey,
    PS384.ALGORITHM: rsa.RSAPublicKey,
    PS512.ALGORITHM: rsa.RSAPublicKey,
}

_KEY_ERRORS = (ValueError, TypeError, KeyError)


def algorithm_name(alg: int) -> str:
    return _NAMES.get(alg, str(alg))


def parse_key(cose: Mapping[int, Any]) -> CoseKey:
    """Turn a COSE map into a :class:`CoseKey` of a supported algorithm.

    ``CoseKey`` only builds its ``cryptography`` key inside ``verify``, so an
    empty signature is checked once: ``InvalidSignature`` means the key
    material loaded. Unknown algorithms and keys that do not fit their
    algorithm raise :class:`MalformedResponse`.
    """

    if not isinstance(cose, Mapping):
        raise MalformedResponse(detail="COSE key must be a map")

    alg = cose.get(3)
    if alg not in _KEY_SHAPES:
        raise MalformedResponse(detail=f"unsupported COSE algorithm {alg!r}")

    kty, crv = _KEY_SHAPES[alg]
    if cose.get(1) != kty or (crv is not None and cose.get(-1) != crv):
        raise MalformedResponse(detail=f"key parameters do not fit {algorithm_name(alg)}")

    key = CoseKey.parse(cose)
    try:
        key.verify(b"", b"")
    except InvalidSignature:
        return key
    except _KEY_ERRORS as exc:
        raise MalformedResponse(detail=f"invalid {algorithm_name(alg)} public key: {exc}") from exc
    raise MalformedResponse(detail="public key accepted an empty signature")


def _check(key: CoseKey, message: bytes, signature: bytes) -> bool:
    try:
        key.verify(message, signature)
    except (InvalidSignature, ValueError):
        return False
    return True


def verify_signature(cose: Mapping[int, Any], message: bytes, signature: bytes) -> bool:
    """Check ``signature`` over ``message`` with the key described by ``cose``."""

    return _check(parse_key(cose), message, signature)


def verify_with_certificate_key(public_key: Any, alg: int, message: bytes, signature: bytes) -> bool:
    """Check a signature made by an attestation certificate's key."""

    key_type = _CRYPTOGRAPHY_KEY_TYPES.get(alg)
    if key_type is None:
        raise MalformedResponse(detail=f"unsupported COSE algorithm {alg!r}")
    if not isinstance(public_key, key_type):
        raise MalformedResponse(detail=f"key type does not match {algorithm_name(alg)}")
    return _check(CoseKey.for_alg(alg).from_cryptography_key(public_key), message, signature)
