"""Configuration for the passkey server.

Everything is read from ``FIDO_SERVER_*`` environment variables by
:func:`load_config`, which returns a plain mapping that ``create_app`` merges
into ``app.config``. Tests pass overrides straight to ``create_app``.
"""
from __future__ import annotations

import os
import re
import secrets
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from fido2.webauthn import (
    AuthenticatorTransport,
    PublicKeyCredentialRpEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

__all__ = ["RelyingParty", "build_relying_party", "load_config"]

_DEFAULT_RP_ID = "localhost"
_DEFAULT_RP_NAME = "Passkey server"
_DEFAULT_ORIGINS = "http://localhost:3000"
_DEFAULT_DB_PATH = "./database.sqlite"


def _env_flag(environ: Mapping[str, str], name: str) -> Optional[bool]:
    """Return ``True`` or ``False`` when the named env var is explicitly set."""

    raw_value = environ.get(name)
    if raw_value is None:
        return None

    normalised = raw_value.strip().lower()
    if normalised in {"", "0", "false", "off", "no"}:
        return False
    return True


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw_value = environ.get(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        value = int(raw_value.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw_value!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _parse_list(raw_value: Optional[str]) -> Tuple[str, ...]:
    """Normalise a comma or newline separated list, keeping order."""

    if raw_value is None:
        return ()

    components = re.split(r"[,;\n]+", raw_value)
    seen = []
    for component in components:
        cleaned = component.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return tuple(seen)


def load_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect server settings from the environment."""

    env = os.environ if environ is None else environ
    debug = bool(_env_flag(env, "FIDO_SERVER_DEBUG"))

    jwt_secret = env.get("FIDO_SERVER_JWT_SECRET") or None
    if jwt_secret is None and debug:
        # Tokens will not survive a restart, which is fine while developing.
        jwt_secret = secrets.token_urlsafe(32)

    return {
        "DEBUG": debug,
        "FIDO_SERVER_RP_ID": env.get("FIDO_SERVER_RP_ID", _DEFAULT_RP_ID).strip() or _DEFAULT_RP_ID,
        "FIDO_SERVER_RP_NAME": env.get("FIDO_SERVER_RP_NAME", _DEFAULT_RP_NAME),
        "FIDO_SERVER_ALLOWED_ORIGINS": _parse_list(
            env.get("FIDO_SERVER_ALLOWED_ORIGINS", _DEFAULT_ORIGINS)
        ),
        "FIDO_SERVER_RESIDENT_KEY": env.get("FIDO_SERVER_RESIDENT_KEY", "preferred"),
        "FIDO_SERVER_USER_VERIFICATION": env.get("FIDO_SERVER_USER_VERIFICATION", "preferred"),
        "FIDO_SERVER_TRANSPORTS": _parse_list(env.get("FIDO_SERVER_TRANSPORTS")),
        "FIDO_SERVER_TIMEOUT_MS": _env_int(env, "FIDO_SERVER_TIMEOUT_MS", 60000),
        "FIDO_SERVER_DB_PATH": env.get("FIDO_SERVER_DB_PATH", _DEFAULT_DB_PATH),
        "FIDO_SERVER_JWT_SECRET": jwt_secret,
        "FIDO_SERVER_TOKEN_TTL_SECONDS": _env_int(
            env, "FIDO_SERVER_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60
        ),
        "FIDO_SERVER_CHALLENGE_MAX_AGE_SECONDS": _env_int(
            env, "FIDO_SERVER_CHALLENGE_MAX_AGE_SECONDS", 5 * 60
        ),
        "FIDO_SERVER_SWEEP_INTERVAL_SECONDS": _env_int(
            env, "FIDO_SERVER_SWEEP_INTERVAL_SECONDS", 5 * 60
        ),
        "FIDO_SERVER_EXPOSE_ERRORS": bool(_env_flag(env, "FIDO_SERVER_EXPOSE_ERRORS")),
        "FIDO_SERVER_HOST": env.get("FIDO_SERVER_HOST", "127.0.0.1"),
        "FIDO_SERVER_PORT": _env_int(env, "FIDO_SERVER_PORT", 3000),
    }


@dataclass(frozen=True)
class RelyingParty:
    """The relying party identity and ceremony policy."""

    entity: PublicKeyCredentialRpEntity
    allowed_origins: FrozenSet[str]
    resident_key: ResidentKeyRequirement = ResidentKeyRequirement.PREFERRED
    user_verification: UserVerificationRequirement = UserVerificationRequirement.PREFERRED
    transports: Tuple[AuthenticatorTransport, ...] = ()
    timeout_ms: int = 60000
    challenge_max_age: int = 300

    @property
    def id(self) -> str:
        return self.entity.id

    @property
    def name(self) -> str:
        return self.entity.name

    @property
    def id_hash(self) -> bytes:
        return bytes(self.entity.id_hash)


def _policy(enum_cls, setting: str, value: Any):
    # fido2 string enums return None for unknown values instead of raising.
    allowed = [member.value for member in enum_cls]
    if value not in allowed:
        raise ValueError(
            f"Invalid WebAuthn policy setting {setting}={value!r}, expected one of {allowed}"
        )
    return enum_cls(value)


def build_relying_party(config: Mapping[str, Any]) -> RelyingParty:
    """Create the :class:`RelyingParty` described by an app config mapping.

    Unknown policy values raise ``ValueError`` so that misconfiguration is
    caught at startup rather than on the first ceremony.
    """

    origins = frozenset(config.get("FIDO_SERVER_ALLOWED_ORIGINS") or ())
    if not origins:
        raise ValueError("FIDO_SERVER_ALLOWED_ORIGINS must name at least one origin")

    resident_key = _policy(
        ResidentKeyRequirement,
        "FIDO_SERVER_RESIDENT_KEY",
        config.get("FIDO_SERVER_RESIDENT_KEY", "preferred"),
    )
    user_verification = _policy(
        UserVerificationRequirement,
        "FIDO_SERVER_USER_VERIFICATION",
        config.get("FIDO_SERVER_USER_VERIFICATION", "preferred"),
    )
    transports = tuple(
        _policy(AuthenticatorTransport, "FIDO_SERVER_TRANSPORTS", value)
        for value in config.get("FIDO_SERVER_TRANSPORTS") or ()
    )

    entity = PublicKeyCredentialRpEntity(
        name=config.get("FIDO_SERVER_RP_NAME") or _DEFAULT_RP_NAME,
        id=config.get("FIDO_SERVER_RP_ID") or _DEFAULT_RP_ID,
    )

    return RelyingParty(
        entity=entity,
        allowed_origins=origins,
        resident_key=resident_key,
        user_verification=user_verification,
        transports=transports,
        timeout_ms=int(config.get("FIDO_SERVER_TIMEOUT_MS", 60000)),
        challenge_max_age=int(config.get("FIDO_SERVER_CHALLENGE_MAX_AGE_SECONDS", 300)),
    )
