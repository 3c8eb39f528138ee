from urllib.parse import parse_qs, urlparse
from uuid import UUID, uuid4

from fastapi.testclient import TestClient
from sqlalchemy import select

from broker.application.services import connection_service
from broker.core.clock import utcnow
from broker.domain.models.audit_log import AuditAction, AuditLog
from broker.domain.models.connection import Connection
from broker.domain.models.oauth_state import OAuthState
from broker.integrations.platform_adapters import AdapterRetryableError
from conftest import auth_headers


def _initiate(client: TestClient, headers: dict, platform: str) -> dict:
    response = client.post(f"/auth/{platform}", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def _callback(client: TestClient, started: dict, *, code: str = "auth-code", **extra) -> dict[str, str]:
    params = {"connectionId": started["connectionId"], "state": started["state"], "code": code, **extra}
    response = client.get("/auth/callback", params=params, follow_redirects=False)
    return _redirect_params(response)


def _redirect_params(response) -> dict[str, str]:
    assert response.status_code == 307
    location = response.headers["location"]
    assert location.startswith("http://app.test/dashboard/connections?")
    return {key: values[0] for key, values in parse_qs(urlparse(location).query).items()}


def _audit_actions(db, user_id: UUID) -> list[str]:
    return list(db.execute(select(AuditLog.action).where(AuditLog.user_id == user_id)).scalars())


def test_initiate_twitter_returns_authorization_url(client: TestClient, user_id):
    response = client.post("/auth/twitter", headers=auth_headers(user_id))
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["platform"] == "twitter"
    assert body["state"]

    auth_url = urlparse(body["authUrl"])
    assert auth_url.netloc == "twitter.com"
    query = parse_qs(auth_url.query)
    assert query["state"] == [body["state"]]
    assert query["code_challenge_method"] == ["S256"]
    assert body["connectionId"] in query["redirect_uri"][0]


def test_initiate_requires_authentication(client: TestClient):
    response = client.post("/auth/twitter")
    assert response.status_code == 401
    assert response.json()["error_code"] == "unauthorized"


def test_initiate_rejects_unknown_and_unimplemented_platforms(client: TestClient, user_id):
    headers = auth_headers(user_id)

    unknown = client.post("/auth/tiktok", headers=headers)
    assert unknown.status_code == 400
    assert unknown.json()["error_code"] == "invalid_input"
    assert unknown.json()["message"] == "Invalid platform"

    linkedin = client.post("/auth/linkedin", headers=headers)
    assert linkedin.status_code == 501
    assert linkedin.json()["message"] == "LinkedIn integration coming soon"


def test_full_connect_flow_and_replay(client: TestClient, fake_adapters, db, user_id):
    headers = auth_headers(user_id)
    started = _initiate(client, headers, "reddit")

    connected = _callback(client, started)
    assert connected == {"success": "Reddit connected successfully", "platform": "reddit"}
    assert fake_adapters["reddit"].exchanged_codes == ["auth-code"]

    replayed = _callback(client, started)
    assert replayed == {"error": "Session expired. Please try connecting again."}
    assert fake_adapters["reddit"].exchanged_codes == ["auth-code"]

    status = client.get("/connections/reddit/status", headers=headers)
    assert status.json() == {"platform": "reddit", "connected": True}

    listing = client.get("/connections", headers=headers).json()
    assert listing["count"] == 1
    item = listing["connections"][0]
    assert item["username"] == "reddit_user"
    assert item["status"] == "connected"
    assert item["isExpired"] is False
    assert item["followerCount"] == 42

    connection = db.get(Connection, UUID(started["connectionId"]))
    assert connection.access_token_encrypted
    assert connection.access_token_encrypted != "reddit-access-auth-code"

    actions = _audit_actions(db, user_id)
    assert AuditAction.CONNECTION_INITIATED in actions
    assert AuditAction.CONNECTION_COMPLETED in actions


def test_initiate_when_connected_is_rejected_and_audited(client: TestClient, fake_adapters, db, user_id):
    headers = auth_headers(user_id)
    _callback(client, _initiate(client, headers, "twitter"))

    duplicate = client.post("/auth/twitter", headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["error_code"] == "already_connected"
    assert AuditAction.CONNECTION_DUPLICATE_REJECTED in _audit_actions(db, user_id)


def test_reinitiate_supersedes_pending_attempt(client: TestClient, fake_adapters, db, user_id):
    headers = auth_headers(user_id)
    first = _initiate(client, headers, "reddit")
    second = _initiate(client, headers, "reddit")
    assert first["connectionId"] != second["connectionId"]

    stale = _callback(client, first)
    assert stale == {"error": "Session expired. Please try connecting again."}

    fresh = _callback(client, second)
    assert fresh["success"] == "Reddit connected successfully"

    rows = {str(row.id): row.status for row in db.execute(select(Connection)).scalars()}
    assert rows[first["connectionId"]] == "error"
    assert rows[second["connectionId"]] == "connected"


def test_callback_with_swapped_connection_id_is_rejected(client: TestClient, fake_adapters, user_id):
    headers = auth_headers(user_id)
    twitter = _initiate(client, headers, "twitter")
    reddit = _initiate(client, headers, "reddit")

    swapped = _callback(client, {"connectionId": reddit["connectionId"], "state": twitter["state"]})
    assert swapped == {"error": "Session expired. Please try connecting again."}
    assert fake_adapters["twitter"].exchanged_codes == []
    assert fake_adapters["reddit"].exchanged_codes == []


def test_sixth_initiation_in_window_is_rate_limited(client: TestClient, fake_adapters, db, user_id):
    headers = auth_headers(user_id)
    for _ in range(5):
        _initiate(client, headers, "twitter")

    limited = client.post("/auth/twitter", headers=headers)
    assert limited.status_code == 429
    body = limited.json()
    assert body["error_code"] == "rate_limited"
    assert body["retryAfter"] > 0
    assert limited.headers["Retry-After"] == str(body["retryAfter"])
    assert AuditAction.CONNECTION_RATE_LIMITED in _audit_actions(db, user_id)

    # Limits are tracked per platform.
    _initiate(client, headers, "reddit")


def test_callback_missing_parameters(client: TestClient, fake_adapters):
    response = client.get("/auth/callback", params={"state": "abc"}, follow_redirects=False)
    assert _redirect_params(response) == {"error": "Missing parameters"}


def test_callback_with_unknown_state_or_bad_connection_id(client: TestClient, fake_adapters, user_id):
    started = _initiate(client, auth_headers(user_id), "twitter")

    unknown_state = _callback(client, {"connectionId": started["connectionId"], "state": "not-a-real-state"})
    assert unknown_state == {"error": "Session expired. Please try connecting again."}

    bad_id = _callback(client, {"connectionId": "not-a-uuid", "state": started["state"]})
    assert bad_id == {"error": "Session expired. Please try connecting again."}


def test_provider_denial_marks_connection_and_consumes_state(client: TestClient, fake_adapters, db, user_id):
    started = _initiate(client, auth_headers(user_id), "twitter")

    response = client.get(
        "/auth/callback",
        params={"connectionId": started["connectionId"], "state": started["state"], "error": "access_denied"},
        follow_redirects=False,
    )
    assert _redirect_params(response) == {"error": "Authorization was denied"}

    connection = db.get(Connection, UUID(started["connectionId"]))
    assert connection.status == "error"
    state = db.get(OAuthState, started["state"])
    assert state.consumed is True
    assert AuditAction.CONNECTION_CALLBACK_DENIED in _audit_actions(db, user_id)

    # The consumed state cannot be used afterwards.
    assert _callback(client, started) == {"error": "Session expired. Please try connecting again."}


def test_exchange_failure_marks_connection_error(client: TestClient, fake_adapters, db, user_id):
    fake_adapters["twitter"].exchange_error = AdapterRetryableError("Twitter token exchange temporary failure: 503")
    started = _initiate(client, auth_headers(user_id), "twitter")

    outcome = _callback(client, started)
    assert outcome == {"error": "Failed to connect Twitter. Please try again."}

    connection = db.get(Connection, UUID(started["connectionId"]))
    assert connection.status == "error"
    assert "503" in connection.last_error
    assert connection.access_token_encrypted is None
    assert AuditAction.CONNECTION_FAILED in _audit_actions(db, user_id)


def test_callbacks_are_rate_limited_per_ip(client: TestClient, fake_adapters):
    for _ in range(30):
        response = client.get("/auth/callback", follow_redirects=False)
        assert _redirect_params(response) == {"error": "Missing parameters"}

    limited = client.get("/auth/callback", follow_redirects=False)
    assert _redirect_params(limited) == {"error": "Too many requests, please try again later."}


def test_disconnect_then_reconnect(client: TestClient, fake_adapters, db, user_id):
    headers = auth_headers(user_id)
    first = _initiate(client, headers, "twitter")
    _callback(client, first)

    response = client.delete("/connections", params={"platform": "twitter"}, headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["remoteRevoked"] is True
    assert body["revokedAt"]
    assert fake_adapters["twitter"].revoked_tokens == ["twitter-access-auth-code"]

    revoked = db.get(Connection, UUID(first["connectionId"]))
    assert revoked.status == "revoked"
    assert revoked.access_token_encrypted is None
    assert revoked.refresh_token_encrypted is None

    again = client.delete("/connections", params={"platform": "twitter"}, headers=headers)
    assert again.status_code == 404
    assert again.json()["message"] == "No connected Twitter account found"

    second = _initiate(client, headers, "twitter")
    assert _callback(client, second, code="second-code")["success"] == "Twitter connected successfully"
    assert client.get("/connections", headers=headers).json()["count"] == 1


def test_disconnect_survives_remote_revoke_failure(client: TestClient, fake_adapters, user_id):
    headers = auth_headers(user_id)
    _callback(client, _initiate(client, headers, "reddit"))
    fake_adapters["reddit"].revoke_result = False

    response = client.delete("/connections", params={"platform": "reddit"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["remoteRevoked"] is False
    assert client.get("/connections/reddit/status", headers=headers).json()["connected"] is False


def test_disconnect_validates_platform(client: TestClient, user_id):
    headers = auth_headers(user_id)
    missing = client.delete("/connections", headers=headers)
    assert missing.status_code == 400
    assert missing.json()["message"] == "Platform is required"

    unknown = client.delete("/connections", params={"platform": "myspace"}, headers=headers)
    assert unknown.status_code == 400
    assert unknown.json()["message"] == "Invalid platform"


def test_connections_are_scoped_to_the_caller(client: TestClient, fake_adapters, user_id):
    _callback(client, _initiate(client, auth_headers(user_id), "twitter"))

    other = auth_headers(uuid4())
    assert client.get("/connections", headers=other).json()["count"] == 0
    assert client.delete("/connections", params={"platform": "twitter"}, headers=other).status_code == 404


def _connection_row(user_id: UUID, platform: str, status: str) -> Connection:
    now = utcnow()
    return Connection(
        id=uuid4(),
        user_id=user_id,
        platform=platform,
        status=status,
        metadata_json={},
        created_at=now,
        updated_at=now,
        connected_at=now if status == "connected" else None,
    )


def test_callback_loses_to_an_already_connected_account(client: TestClient, fake_adapters, db, user_id):
    started = _initiate(client, auth_headers(user_id), "twitter")
    winner = _connection_row(user_id, "twitter", "connected")
    db.add(winner)
    db.commit()

    outcome = _callback(client, started)

    assert outcome == {"error": "Failed to connect Twitter. Please try again."}
    db.expire_all()
    rows = {row.id: row.status for row in db.execute(select(Connection)).scalars()}
    assert rows == {winner.id: "connected", UUID(started["connectionId"]): "error"}
    assert db.get(Connection, UUID(started["connectionId"])).last_error == "platform already connected"
    assert AuditAction.CONNECTION_FAILED in _audit_actions(db, user_id)


def test_initiate_loses_pending_insert_race(client: TestClient, fake_adapters, db, user_id, monkeypatch):
    original_supersede = connection_service._supersede_pending
    racing: list[Connection] = []

    def _supersede_then_race(session, *, user_id, platform, now):
        original_supersede(session, user_id=user_id, platform=platform, now=now)
        row = _connection_row(user_id, platform, "pending")
        db.add(row)
        db.commit()
        racing.append(row)

    monkeypatch.setattr(connection_service, "_supersede_pending", _supersede_then_race)

    response = client.post("/auth/twitter", headers=auth_headers(user_id))

    assert response.status_code == 409
    assert response.json()["error_code"] == "connection_in_progress"
    db.expire_all()
    rows = db.execute(select(Connection)).scalars().all()
    assert [(row.id, row.status) for row in rows] == [(racing[0].id, "pending")]
    assert db.execute(select(OAuthState)).scalars().all() == []
