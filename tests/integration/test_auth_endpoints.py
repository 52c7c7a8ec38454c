"""Integration tests for the OAuth and session endpoints."""

import urllib.parse

import pytest

from whoplytics.auth.handshake import ExchangeResult
from whoplytics.auth.state import OAuthState, StateCodec
from whoplytics.auth.credentials import epoch_ms
from whoplytics.auth.sessions import SessionManager
from whoplytics.config import get_settings
from whoplytics.errors import PlatformExchangeError


def _start(client, headers=None, **params):
    response = client.get("/api/auth/init", params=params, headers=headers or {})
    assert response.status_code == 200, response.text
    return response.json()


def _callback(client, state, code="code_1"):
    params = {"code": code}
    if state is not None:
        params["state"] = state
    return client.get("/api/auth/callback", params=params, follow_redirects=False)


def _login_error(response):
    assert response.status_code == 302
    location = urllib.parse.urlsplit(response.headers["location"])
    assert location.path == "/login"
    return urllib.parse.parse_qs(location.query)["error"][0]


class TestInit:

    def test_returns_authorize_url(self, client):
        body = _start(client, headers={"x-whop-company-id": "biz_abc"})
        url = urllib.parse.urlsplit(body["url"])
        params = dict(urllib.parse.parse_qsl(url.query))

        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://whop.com/oauth"
        assert params["client_id"] == "app_test123"
        assert params["redirect_uri"] == "https://testserver/api/auth/callback"
        assert params["state"] == body["state"]

        state = StateCodec(get_settings().secret_key).decode(body["state"])
        assert state.candidate_tenant_id == "biz_abc"

    def test_redirect_origin_localhost(self, client):
        body = _start(client, redirect_origin="http://localhost:3000/some/path")
        params = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(body["url"]).query))
        assert params["redirect_uri"] == "http://localhost:3000/api/auth/callback"

    @pytest.mark.parametrize("origin", ["https://evil.example", "javascript:alert(1)", "not a url"])
    def test_foreign_redirect_origin_rejected(self, client, origin):
        response = client.get("/api/auth/init", params={"redirect_origin": origin})
        assert response.status_code == 400


class TestCallback:

    def test_provider_error(self, client, platform):
        response = client.get(
            "/api/auth/callback", params={"error": "access_denied"}, follow_redirects=False
        )
        assert _login_error(response) == "access_denied"

    def test_missing_params(self, client, platform):
        assert _login_error(_callback(client, None)) == "missing_params"

    def test_garbage_state(self, client, platform):
        assert _login_error(_callback(client, "garbage")) == "invalid_state"
        platform.exchange_code.assert_not_called()

    def test_expired_state(self, client, platform):
        stale = StateCodec(get_settings().secret_key).encode(
            OAuthState("nonce-old", None, "biz_abc", epoch_ms() - 11 * 60 * 1000)
        )
        assert _login_error(_callback(client, stale)) == "expired_state"
        platform.exchange_code.assert_not_called()

    def test_successful_login(self, client, platform):
        state = _start(client, headers={"x-whop-company-id": "biz_abc"})["state"]
        response = _callback(client, state)

        assert response.status_code == 302
        assert response.headers["location"] == "/dashboard/biz_abc"
        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith("whop_session=")
        assert "httponly" in cookie
        assert "secure" in cookie
        assert "samesite=none" in cookie
        assert "max-age=2592000" in cookie
        assert "path=/" in cookie

        platform.exchange_code.assert_awaited_once_with(
            "code_1", "https://testserver/api/auth/callback"
        )

        me = client.get("/api/auth/me")
        assert me.status_code == 200
        assert me.json()["companyId"] == "biz_abc"
        assert me.json()["userId"] == "user_42"
        assert me.json()["username"] == "alice"

        plan = client.get("/api/company/plan").json()
        assert plan["installed"] is True

    def test_replayed_state(self, client, platform):
        state = _start(client, headers={"x-whop-company-id": "biz_abc"})["state"]
        assert _callback(client, state).status_code == 302
        assert _login_error(_callback(client, state, code="code_2")) == "replayed_state"
        # The second code is never sent to Whop
        platform.exchange_code.assert_awaited_once()

    def test_fresh_login_through_experience(self, client, platform, install):
        install("biz_abc", "exp_123")
        platform.exchange_code.return_value = ExchangeResult(
            "whop_at", "user_42", "alice", company_id="biz_abc"
        )
        state = _start(client, experienceId="exp_123")["state"]
        response = _callback(client, state)
        assert response.headers["location"] == "/dashboard/biz_abc"

    def test_relogin_refreshes_access_token(self, client, platform, install):
        install("biz_abc", "exp_123", access_token="old_token", plan="pro")
        platform.exchange_code.return_value = ExchangeResult(
            "whop_at", "user_42", "alice", company_id="biz_abc"
        )
        state = _start(client, headers={"x-whop-company-id": "biz_abc"})["state"]
        assert _callback(client, state).headers["location"] == "/dashboard/biz_abc"

        plan = client.get("/api/company/plan").json()
        assert plan["plan"] == "pro"
        assert plan["experienceId"] == "exp_123"

    def test_same_user_can_log_in_again_without_exchange_company(self, client, platform):
        for _ in range(2):
            state = _start(client, headers={"x-whop-company-id": "biz_abc"})["state"]
            assert _callback(client, state).headers["location"] == "/dashboard/biz_abc"

    def test_company_from_exchange(self, client, platform):
        platform.exchange_code.return_value = ExchangeResult(
            "whop_at", "user_42", "alice", company_id="biz_fromapi"
        )
        state = _start(client)["state"]
        assert _callback(client, state).headers["location"] == "/dashboard/biz_fromapi"

    def test_no_company(self, client, platform):
        state = _start(client)["state"]
        assert _login_error(_callback(client, state)) == "no_company"

    def test_exchange_failure(self, client, platform):
        platform.exchange_code.side_effect = PlatformExchangeError("bad code", status_code=400)
        state = _start(client, headers={"x-whop-company-id": "biz_abc"})["state"]
        assert _login_error(_callback(client, state)) == "token_exchange_failed"


class TestCallbackTenantBinding:
    """A login may only bind to a company the platform or a prior login vouches for."""

    def _as_mallory(self, platform, company_id="biz_mallory"):
        platform.exchange_code.return_value = ExchangeResult(
            "mallory_token", "user_mallory", "mallory", company_id=company_id
        )

    def _stored_user(self, client, tenant_id):
        token = client.post("/api/auth/refresh", params={"companyId": tenant_id}).json()["sessionToken"]
        return client.get("/api/auth/me", params={"token": token}).json()["userId"]

    def test_cannot_claim_another_company_by_query(self, client, platform, install):
        install("biz_victim", "exp_victim", access_token="victim_token")
        self._as_mallory(platform)

        state = _start(client, companyId="biz_victim")["state"]
        assert _login_error(_callback(client, state)) == "no_company"

        client.cookies.clear()
        assert client.get("/api/auth/me").status_code == 401
        assert self._stored_user(client, "biz_victim") == "biz_victim"

    def test_cannot_claim_another_company_by_header(self, client, platform, install):
        install("biz_victim", "exp_victim")
        self._as_mallory(platform)

        state = _start(client, headers={"x-whop-company-id": "biz_victim"})["state"]
        assert _login_error(_callback(client, state)) == "no_company"

    def test_unconfirmed_login_cannot_take_over_installation(self, client, platform, install):
        install("biz_victim", "exp_victim", access_token="victim_token")
        self._as_mallory(platform, company_id=None)

        state = _start(client, companyId="biz_victim")["state"]
        assert _login_error(_callback(client, state)) == "no_company"
        assert self._stored_user(client, "biz_victim") == "biz_victim"

    def test_another_user_cannot_reuse_unconfirmed_tenant(self, client, platform):
        state = _start(client, companyId="biz_abc")["state"]
        assert _callback(client, state).headers["location"] == "/dashboard/biz_abc"

        client.cookies.clear()
        self._as_mallory(platform, company_id=None)
        state = _start(client, companyId="biz_abc")["state"]
        assert _login_error(_callback(client, state)) == "no_company"
        assert self._stored_user(client, "biz_abc") == "user_42"

    def test_experience_of_another_company_is_not_moved(self, client, platform, install):
        install("biz_victim", "exp_victim")
        self._as_mallory(platform)

        state = _start(client, companyId="biz_mallory", experienceId="exp_victim")["state"]
        assert _callback(client, state).headers["location"] == "/dashboard/biz_mallory"
        assert client.get("/api/company/plan").json()["experienceId"] is None

        victim = SessionManager.from_settings().issue("biz_victim", "user_1").credential_token
        plan = client.get("/api/company/plan", headers={"Authorization": f"Bearer {victim}"}).json()
        assert plan["experienceId"] == "exp_victim"


class TestSessionEndpoint:

    def test_issue_for_installed_company(self, client, install):
        install("biz_abc", "exp_1")
        response = client.post("/api/auth/session", json={"companyId": "biz_abc", "userId": "user_1"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["expiresAt"] > epoch_ms()
        assert "whop_session=" in response.headers["set-cookie"]

        client.cookies.clear()
        me = client.get(
            "/api/auth/me",
            headers={"Authorization": f"Bearer {body['sessionToken']}"},
        )
        assert me.json()["companyId"] == "biz_abc"

    def test_missing_user(self, client):
        response = client.post("/api/auth/session", json={"companyId": "biz_abc"})
        assert response.status_code == 400
        assert response.json()["detail"] == "userId required"

    def test_missing_both(self, client):
        response = client.post("/api/auth/session", json={})
        assert response.status_code == 400
        assert response.json()["detail"] == "companyId and userId required"

    def test_unshaped_company(self, client):
        response = client.post("/api/auth/session", json={"companyId": "acme", "userId": "u"})
        assert response.status_code == 400

    def test_not_installed(self, client):
        response = client.post("/api/auth/session", json={"companyId": "biz_none", "userId": "u"})
        assert response.status_code == 404

    def test_existing_token(self, client, install):
        install("biz_abc", "exp_1")
        token = client.post(
            "/api/auth/session", json={"companyId": "biz_abc", "userId": "user_1"}
        ).json()["sessionToken"]

        response = client.post("/api/auth/session", json={"sessionToken": token})
        assert response.status_code == 200
        assert response.json()["sessionToken"] == token

    def test_malformed_token(self, client):
        response = client.post("/api/auth/session", json={"sessionToken": "not-base64-json"})
        assert response.status_code == 400


class TestRefresh:

    def test_refresh_without_cookie(self, client, install):
        install("biz_abc", "exp_1")
        response = client.post("/api/auth/refresh", params={"companyId": "biz_abc"})
        assert response.status_code == 200
        token = response.json()["sessionToken"]

        me = client.get("/api/auth/me", params={"token": token}).json()
        assert me["companyId"] == "biz_abc"
        # Installed by webhook, so no user is linked yet
        assert me["userId"] == "biz_abc"

    def test_missing_company(self, client):
        assert client.post("/api/auth/refresh").status_code == 400

    def test_unknown_company(self, client):
        response = client.post("/api/auth/refresh", params={"companyId": "biz_none"})
        assert response.status_code == 404


class TestMeAndLogout:

    def test_me_requires_session(self, client):
        assert client.get("/api/auth/me").status_code == 401

    def test_me_with_garbage_cookie(self, client):
        client.cookies.set("whop_session", "not-base64-json")
        assert client.get("/api/auth/me").status_code == 401

    def test_logout_clears_cookie(self, client):
        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        assert response.json() == {"success": True}
        cookie = response.headers["set-cookie"].lower()
        assert "max-age=0" in cookie
        assert "samesite=none" in cookie

    def test_logout_redirect(self, client):
        response = client.get("/api/auth/logout", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/login"
        assert "max-age=0" in response.headers["set-cookie"].lower()
