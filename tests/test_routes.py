"""End to end HTTP flows against the Flask test client."""
from datetime import datetime, timezone

import pytest

from passkey_server.app import create_app
from passkey_server.routes import get_services
from passkey_server.storage import Storage, User

from conftest import BASE_CONFIG


def _register(client, authenticator, email="alice@example.com", name="Alice", **kwargs):
    begin = client.post("/api/auth/register/begin", json={"email": email, "name": name})
    assert begin.status_code == 200
    options = begin.get_json()
    credential = authenticator.make_credential(options, **kwargs)
    return client.post(
        "/api/auth/register/complete",
        json={"email": email, "credential": credential, "challengeId": options["challengeId"]},
    )


def _sign_in(client, authenticator, email="alice@example.com", **kwargs):
    body = {"email": email} if email is not None else {}
    begin = client.post("/api/auth/signin/begin", json=body)
    assert begin.status_code == 200
    options = begin.get_json()
    assertion = authenticator.get_assertion(options, **kwargs)
    payload = {"credential": assertion, "challengeId": options["challengeId"]}
    if email is not None:
        payload["email"] = email
    return client.post("/api/auth/signin/complete", json=payload)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "OK"
    assert body["service"] == "FIDO2 Authentication Server"
    assert body["timestamp"].endswith("Z")


def test_unknown_route(client):
    response = client.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.get_json() == {"message": "Route not found"}


def test_register_and_sign_in(client, authenticator):
    registered = _register(client, authenticator)
    assert registered.status_code == 201
    body = registered.get_json()
    assert body["success"] is True
    assert body["user"]["email"] == "alice@example.com"
    assert body["token"]

    signed_in = _sign_in(client, authenticator)
    assert signed_in.status_code == 200
    body = signed_in.get_json()
    assert body["success"] is True
    assert body["user"]["id"] == registered.get_json()["user"]["id"]

    profile = client.get("/api/profile", headers={"Authorization": f"Bearer {body['token']}"})
    assert profile.status_code == 200
    assert profile.get_json()["user"]["email"] == "alice@example.com"


def test_register_begin_validation(client):
    response = client.post("/api/auth/register/begin", json={"email": "a@example.com"})
    assert response.status_code == 400
    assert response.get_json() == {"message": "Email and name are required"}

    response = client.post("/api/auth/register/begin", data="not json")
    assert response.status_code == 400


def test_register_existing_email_conflicts(client, authenticator):
    assert _register(client, authenticator).status_code == 201
    response = client.post(
        "/api/auth/register/begin", json={"email": "alice@example.com", "name": "Alice"}
    )
    assert response.status_code == 409
    assert response.get_json()["message"] == "User with this email already exists"


def test_register_complete_missing_fields(client):
    response = client.post("/api/auth/register/complete", json={"email": "a@example.com"})
    assert response.status_code == 400
    assert response.get_json() == {"message": "Missing required fields"}


def test_register_complete_with_flat_native_body(client, authenticator):
    options = client.post(
        "/api/auth/register/begin", json={"email": "alice@example.com", "name": "Alice"}
    ).get_json()
    credential = authenticator.make_credential(options)
    response = client.post(
        "/api/auth/register/complete",
        json={
            "email": "alice@example.com",
            "challengeId": options["challengeId"],
            "credentialId": credential["id"],
            "clientDataJSON": credential["response"]["clientDataJSON"],
            "authenticatorData": credential["response"]["attestationObject"],
        },
    )
    assert response.status_code == 201


def test_replayed_registration_is_rejected(client, authenticator):
    options = client.post(
        "/api/auth/register/begin", json={"email": "alice@example.com", "name": "Alice"}
    ).get_json()
    body = {
        "email": "alice@example.com",
        "credential": authenticator.make_credential(options),
        "challengeId": options["challengeId"],
    }
    assert client.post("/api/auth/register/complete", json=body).status_code == 201

    replay = client.post("/api/auth/register/complete", json=body)
    assert replay.status_code == 400
    assert replay.get_json() == {"message": "Invalid or expired challenge"}


def test_verification_failure_hides_details(client, authenticator):
    response = _register(client, authenticator, origin="https://evil.example")
    assert response.status_code == 400
    assert response.get_json() == {"message": "Verification failed"}


def test_signin_begin_unknown_user(client):
    response = client.post("/api/auth/signin/begin", json={"email": "nobody@example.com"})
    assert response.status_code == 404
    assert response.get_json() == {"message": "User not found"}


def test_signin_begin_blank_email(client):
    response = client.post("/api/auth/signin/begin", json={"email": ""})
    assert response.status_code == 400
    assert response.get_json() == {"message": "Email is required"}


def test_discoverable_sign_in(client, authenticator):
    _register(client, authenticator)
    begin = client.post("/api/auth/signin/begin", json={})
    assert begin.get_json()["allowCredentials"] == []

    response = _sign_in(client, authenticator, email=None)
    assert response.status_code == 200
    assert response.get_json()["user"]["email"] == "alice@example.com"


def test_cloned_credential_is_rejected(client, authenticator, storage):
    _register(client, authenticator)
    assert _sign_in(client, authenticator).status_code == 200

    response = _sign_in(client, authenticator, sign_count=1)
    assert response.status_code == 400
    assert response.get_json() == {"message": "Verification failed"}

    software = next(iter(authenticator.credentials.values()))
    stored = storage.get_credential_by_credential_id(software.credential_id_b64)
    assert stored.sign_count == 1


def test_tampered_assertion_is_rejected(client, authenticator):
    _register(client, authenticator)
    response = _sign_in(client, authenticator, tamper=True)
    assert response.status_code == 400
    assert response.get_json() == {"message": "Verification failed"}


def test_malformed_assertion_fields(client, authenticator):
    _register(client, authenticator)
    options = client.post(
        "/api/auth/signin/begin", json={"email": "alice@example.com"}
    ).get_json()
    assertion = authenticator.get_assertion(options)
    assertion["response"]["signature"] = assertion["response"]["signature"] + "=="
    response = client.post(
        "/api/auth/signin/complete",
        json={"credential": assertion, "challengeId": options["challengeId"]},
    )
    assert response.status_code == 400
    assert response.get_json() == {"message": "Malformed authenticator response"}


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Basic abc"},
        {"Authorization": "Bearer "},
    ],
)
def test_profile_requires_token(client, headers):
    response = client.get("/api/profile", headers=headers)
    assert response.status_code == 401
    assert response.get_json() == {"message": "Access token required"}


def test_profile_rejects_invalid_token(client):
    response = client.get("/api/profile", headers={"Authorization": "Bearer not.a.jwt"})
    assert response.status_code == 401
    assert response.get_json() == {"message": "Invalid token"}


def test_profile_rejects_token_for_deleted_user(app, client):
    ghost = User(id="ghost", email="ghost@example.com", name="Ghost", created_at=datetime.now(timezone.utc))
    token = get_services(app).tokens.issue(ghost)
    response = client.get("/api/profile", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_unexpected_errors_are_hidden(storage, monkeypatch):
    app = create_app(dict(BASE_CONFIG), storage=storage)

    def explode(*args, **kwargs):
        raise RuntimeError("database on fire")

    monkeypatch.setattr(get_services(app).registration, "begin", explode)
    response = app.test_client().post(
        "/api/auth/register/begin", json={"email": "a@example.com", "name": "A"}
    )
    assert response.status_code == 500
    assert response.get_json() == {"message": "Internal server error"}


def test_unexpected_errors_can_be_exposed(storage, monkeypatch):
    app = create_app(dict(BASE_CONFIG, FIDO_SERVER_EXPOSE_ERRORS=True), storage=storage)

    def explode(*args, **kwargs):
        raise RuntimeError("database on fire")

    monkeypatch.setattr(get_services(app).registration, "begin", explode)
    response = app.test_client().post(
        "/api/auth/register/begin", json={"email": "a@example.com", "name": "A"}
    )
    assert response.status_code == 500
    assert response.get_json()["error"] == "database on fire"


def test_create_app_requires_jwt_secret(storage):
    with pytest.raises(RuntimeError):
        create_app(dict(BASE_CONFIG, FIDO_SERVER_JWT_SECRET=None), storage=storage)


def test_apps_are_isolated(storage, authenticator):
    other_storage = Storage(":memory:")
    try:
        first = create_app(dict(BASE_CONFIG), storage=storage).test_client()
        second = create_app(dict(BASE_CONFIG), storage=other_storage).test_client()
        assert _register(first, authenticator).status_code == 201
        response = second.post("/api/auth/signin/begin", json={"email": "alice@example.com"})
        assert response.status_code == 404
    finally:
        other_storage.close()
