from dataclasses import replace

import pytest
from fastapi import Depends, Request
from fastapi.testclient import TestClient

from rentalhub.dependencies import (
    require_access_token,
    require_any_permission,
    require_permission,
    require_session_token,
)
from rentalhub.errors import DatabaseError
from rentalhub.main import create_app
from rentalhub.services.tokens import Principal


def _headers(access=None, session=None):
    headers = {}
    if access:
        headers["x-access-token"] = access
    if session:
        headers["x-session-token"] = session
    return headers


@pytest.fixture
def tokens(services, owner):
    principal, _ = owner
    access = services.access_tokens.issue(principal).token
    session = services.sessions.create_session(principal.user_id, "laptop").session_token
    return principal, access, session


@pytest.fixture
def guarded_app(app):
    @app.get("/api/reports", dependencies=[Depends(require_access_token), Depends(require_permission("VIEW_REPORTS"))])
    def reports():
        return {"ok": True}

    @app.get("/api/billing", dependencies=[Depends(require_access_token), Depends(require_any_permission("BILLING_READ", "BILLING_ADMIN"))])
    def billing():
        return {"ok": True}

    @app.get("/api/unguarded-permission", dependencies=[Depends(require_permission("VIEW_REPORTS"))])
    def unguarded():
        return {"ok": True}

    @app.get("/api/session-only")
    def session_only(session=Depends(require_session_token)):
        return {"user_id": session.user_id}

    return app


@pytest.fixture
def guarded_client(guarded_app):
    with TestClient(guarded_app) as test_client:
        yield test_client


def test_missing_access_token(client):
    response = client.post("/api/auth/logout")
    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error_code": "AUTHENTICATION_ERROR",
        "message": "Access token required",
    }


def test_malformed_access_token_is_400(client):
    response = client.post("/api/auth/logout", headers=_headers(access="###"))
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid access token format"


def test_tampered_and_expired_tokens_share_a_message(client, services, tokens, clock):
    _, access, _ = tokens
    tampered = access[:10] + ("A" if access[10] != "A" else "B") + access[11:]
    first = client.post("/api/auth/logout", headers=_headers(access=tampered))
    clock.advance(minutes=16)
    second = client.post("/api/auth/logout", headers=_headers(access=access))
    assert first.status_code == second.status_code == 401
    assert first.json()["message"] == second.json()["message"] == "Invalid access token"


def test_session_token_used_as_access_token(client, tokens):
    _, _, session = tokens
    response = client.post("/api/auth/logout", headers=_headers(access=session))
    assert response.status_code == 401


def test_require_both_happy_path(client, tokens):
    _, access, session = tokens
    response = client.get("/api/devices/online", headers=_headers(access, session))
    assert response.status_code == 200
    assert response.json() == {"count": 0, "devices": []}


def test_require_both_missing_session(client, tokens):
    _, access, _ = tokens
    response = client.get("/api/devices/online", headers=_headers(access))
    assert response.status_code == 401
    assert response.json()["message"] == "Session token required"


def test_require_both_rejects_other_users_session(client, services, tokens):
    principal, access, _ = tokens
    foreign = services.sessions.create_session(principal.user_id + 100, "laptop").session_token
    response = client.get("/api/devices/online", headers=_headers(access, foreign))
    assert response.status_code == 401
    assert response.json()["message"] == "Access token does not match session"


def test_require_both_rejects_inactive_session(client, services, tokens):
    _, access, session = tokens
    services.sessions.invalidate_session(session)
    response = client.get("/api/devices/online", headers=_headers(access, session))
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid session token"


def test_session_lookup_failure_is_500(client, database, tokens):
    _, access, session = tokens
    with database.engine.begin() as connection:
        connection.exec_driver_sql("DROP TABLE user_sessions")
    response = client.get("/api/devices/online", headers=_headers(access, session))
    assert response.status_code == 500
    body = response.json()
    assert body["message"] == "Failed to validate session"
    assert "user_sessions" not in response.text


def test_session_only_guard(guarded_client, tokens):
    principal, _, session = tokens
    response = guarded_client.get("/api/session-only", headers=_headers(session=session))
    assert response.json() == {"user_id": principal.user_id}


def test_permission_denied_then_granted(guarded_client, services, tokens):
    principal, access, _ = tokens
    denied = guarded_client.get("/api/reports", headers=_headers(access))
    assert denied.status_code == 403
    services.accounts.grant_permission(principal.user_id, "VIEW_REPORTS")
    allowed = guarded_client.get("/api/reports", headers=_headers(access))
    assert allowed.json() == {"ok": True}


def test_any_permission(guarded_client, services, tokens):
    principal, access, _ = tokens
    assert guarded_client.get("/api/billing", headers=_headers(access)).status_code == 403
    services.accounts.grant_permission(principal.user_id, "BILLING_ADMIN")
    assert guarded_client.get("/api/billing", headers=_headers(access)).status_code == 200


def test_permission_without_principal_is_401(guarded_client):
    assert guarded_client.get("/api/unguarded-permission").status_code == 401


def test_permission_lookup_failure_is_500(guarded_client, services, tokens, monkeypatch):
    _, access, _ = tokens

    def broken(user_id, code):
        raise DatabaseError("Failed to verify permissions")

    monkeypatch.setattr(services.accounts, "has_permission", broken)
    response = guarded_client.get("/api/reports", headers=_headers(access))
    assert response.status_code == 500


def test_cookie_transport_ignores_headers(settings, services, tokens):
    _, access, session = tokens
    services.settings = replace(settings, token_transport="cookie")
    with TestClient(create_app(services=services)) as client:
        by_header = client.get("/api/devices/online", headers=_headers(access, session))
        assert by_header.status_code == 401
        client.cookies.set("access_token", access)
        client.cookies.set("session_token", session)
        assert client.get("/api/devices/online").status_code == 200


def test_principal_attached_to_request(app, tokens):
    _, access, _ = tokens

    @app.get("/api/whoami", dependencies=[Depends(require_access_token)])
    def whoami(request: Request):
        principal: Principal = request.state.principal
        return {"user_id": principal.user_id}

    with TestClient(app) as client:
        response = client.get("/api/whoami", headers=_headers(access))
    assert response.json() == {"user_id": tokens[0].user_id}
