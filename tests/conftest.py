import sys
from pathlib import Path

import pytest

_TESTS_DIR = Path(__file__).resolve().parent
_REPO_ROOT = _TESTS_DIR.parent
for _path in (_REPO_ROOT, _TESTS_DIR):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from passkey_server.app import create_app  # noqa: E402
from passkey_server.authentication import AuthenticationCeremony  # noqa: E402
from passkey_server.config import build_relying_party  # noqa: E402
from passkey_server.registration import RegistrationCeremony  # noqa: E402
from passkey_server.storage import Storage  # noqa: E402
from passkey_server.tokens import SessionTokens  # noqa: E402
from software_authenticator import SoftwareAuthenticator  # noqa: E402

ORIGIN = "http://localhost:3000"
APP_ORIGIN = "android:apk-key-hash:AAECAwQFBgcICQoLDA0ODxAREhMUFRYXGBkaGxwdHh8"
JWT_SECRET = "test-secret-with-enough-entropy-for-hs256"

BASE_CONFIG = {
    "FIDO_SERVER_RP_ID": "localhost",
    "FIDO_SERVER_RP_NAME": "Test RP",
    "FIDO_SERVER_ALLOWED_ORIGINS": (ORIGIN, APP_ORIGIN),
    "FIDO_SERVER_RESIDENT_KEY": "preferred",
    "FIDO_SERVER_USER_VERIFICATION": "preferred",
    "FIDO_SERVER_JWT_SECRET": JWT_SECRET,
    "FIDO_SERVER_CHALLENGE_MAX_AGE_SECONDS": 300,
}


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(clock):
    store = Storage(":memory:", challenge_max_age=300, clock=clock)
    yield store
    store.close()


@pytest.fixture
def relying_party():
    return build_relying_party(BASE_CONFIG)


@pytest.fixture
def tokens():
    return SessionTokens(JWT_SECRET)


@pytest.fixture
def registration(storage, relying_party, tokens):
    return RegistrationCeremony(storage, relying_party, tokens)


@pytest.fixture
def authentication(storage, relying_party, tokens):
    return AuthenticationCeremony(storage, relying_party, tokens)


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator(origin=ORIGIN)


@pytest.fixture
def app(storage):
    return create_app(dict(BASE_CONFIG), storage=storage)


@pytest.fixture
def client(app):
    return app.test_client()
