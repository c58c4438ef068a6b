"""Passkey (WebAuthn) relying party server."""
from __future__ import annotations

from importlib import import_module
from typing import Any, TYPE_CHECKING

__all__ = ["create_app", "main"]


if TYPE_CHECKING:  # pragma: no cover - import only for static analysis.
    from .app import create_app as _create_app  # noqa: F401
    from .app import main as _main  # noqa: F401

    create_app = _create_app
    main = _main


def __getattr__(name: str) -> Any:
    """Import the Flask application module only when it is asked for.

    The ceremonies, verifier and storage can then be used without pulling in
    Flask.
    """

    if name in __all__:
        module = import_module(".app", __name__)
        return getattr(module, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
