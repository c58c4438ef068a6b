"""Health check, protected profile route and JSON error handling."""
from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from ..errors import PasskeyError, Unauthorized
from . import get_services

bp = Blueprint("general", __name__)

SERVICE_NAME = "FIDO2 Authentication Server"


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Access token required")
    return token.strip()


@bp.route("/health", methods=["GET"])
def health():
    return jsonify(
        {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "service": SERVICE_NAME,
        }
    )


@bp.route("/api/profile", methods=["GET"])
def profile():
    services = get_services()
    claims = services.tokens.validate(_bearer_token())
    user = services.storage.get_user_by_id(claims["userId"])
    if user is None:
        raise Unauthorized("Invalid token", detail="user no longer exists")
    return jsonify({"success": True, "user": user.to_json()})


@bp.app_errorhandler(PasskeyError)
def handle_passkey_error(exc: PasskeyError):
    if exc.status_code >= 500:
        current_app.logger.error("%s %s failed: %s", request.method, request.path, exc)
    else:
        current_app.logger.info(
            "%s %s -> %d %s", request.method, request.path, exc.status_code, exc
        )
    return jsonify({"message": exc.message}), exc.status_code


@bp.app_errorhandler(HTTPException)
def handle_http_exception(exc: HTTPException):
    if exc.code == 404:
        return jsonify({"message": "Route not found"}), 404
    return jsonify({"message": exc.description}), exc.code


@bp.app_errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    current_app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    body = {"message": "Internal server error"}
    if current_app.config.get("FIDO_SERVER_EXPOSE_ERRORS"):
        body["error"] = str(exc)
    return jsonify(body), 500
