"""HTTP routes and the per-application service container they use."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import Flask, current_app

from ..authentication import AuthenticationCeremony
from ..config import RelyingParty
from ..registration import RegistrationCeremony
from ..scheduler import ChallengeSweeper
from ..storage import Storage
from ..tokens import SessionTokens

__all__ = ["EXTENSION_KEY", "Services", "get_services"]

EXTENSION_KEY = "passkey_server"


@dataclass
class Services:
    storage: Storage
    relying_party: RelyingParty
    tokens: SessionTokens
    registration: RegistrationCeremony
    authentication: AuthenticationCeremony
    sweeper: ChallengeSweeper


def get_services(app: Optional[Flask] = None) -> Services:
    """Return the services bound to ``app`` (default: the current app)."""

    target = app if app is not None else current_app
    return target.extensions[EXTENSION_KEY]
