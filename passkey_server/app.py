"""Application factory and entry point for the passkey server."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Mapping, Optional

from flask import Flask

from .authentication import AuthenticationCeremony
from .config import build_relying_party, load_config
from .registration import RegistrationCeremony
from .routes import EXTENSION_KEY, Services, get_services
from .routes import auth, general
from .scheduler import ChallengeSweeper
from .storage import Storage
from .tokens import SessionTokens

__all__ = ["create_app", "main"]


def create_app(
    config: Optional[Mapping[str, Any]] = None,
    *,
    storage: Optional[Storage] = None,
    start_sweeper: bool = False,
) -> Flask:
    """Build a Flask app with its own storage, ceremonies and sweeper.

    ``config`` overrides values loaded from the environment. A ``storage``
    may be passed in to share one database between apps (or to inject a
    test clock); otherwise one is opened at ``FIDO_SERVER_DB_PATH``.
    """

    app = Flask(__name__)
    app.config.update(load_config())
    if config:
        app.config.update(config)

    relying_party = build_relying_party(app.config)

    secret = app.config.get("FIDO_SERVER_JWT_SECRET")
    if not secret:
        raise RuntimeError("FIDO_SERVER_JWT_SECRET must be set")
    tokens = SessionTokens(
        secret, timedelta(seconds=int(app.config["FIDO_SERVER_TOKEN_TTL_SECONDS"]))
    )

    if storage is None:
        storage = Storage(
            app.config["FIDO_SERVER_DB_PATH"],
            challenge_max_age=relying_party.challenge_max_age,
        )

    sweeper = ChallengeSweeper(
        storage,
        interval=app.config["FIDO_SERVER_SWEEP_INTERVAL_SECONDS"],
        max_age=relying_party.challenge_max_age,
        logger=app.logger,
    )

    app.extensions[EXTENSION_KEY] = Services(
        storage=storage,
        relying_party=relying_party,
        tokens=tokens,
        registration=RegistrationCeremony(storage, relying_party, tokens),
        authentication=AuthenticationCeremony(storage, relying_party, tokens),
        sweeper=sweeper,
    )

    app.register_blueprint(general.bp)
    app.register_blueprint(auth.bp)

    if start_sweeper:
        sweeper.start()

    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(start_sweeper=True)
    services = get_services(app)
    app.logger.info(
        "Relying party %s accepting origins: %s",
        services.relying_party.id,
        ", ".join(sorted(services.relying_party.allowed_origins)),
    )
    try:
        app.run(
            host=app.config["FIDO_SERVER_HOST"],
            port=app.config["FIDO_SERVER_PORT"],
            debug=app.config["DEBUG"],
            use_reloader=False,
        )
    finally:
        services.sweeper.stop()
        services.storage.close()


if __name__ == "__main__":  # pragma: no cover
    main()
