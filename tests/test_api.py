import asyncio

import pytest
from fastapi.testclient import TestClient

from poolauth.app import create_app
from poolauth.service.totp import generate_totp

ADMIN = {"X-Admin-Key": "test-admin-key"}
PASSWORD = "pw123!ABC"


@pytest.fixture
def fake_engine(engine):
    return engine


@pytest.fixture
def api(fake_engine):
    with TestClient(create_app(fake_engine)) as client:
        yield client


@pytest.fixture
def provisioned(api):
    resp = api.post(
        "/v1/admin/clients",
        json={
            "client_name": "Test App",
            "client_id": "c1",
            "redirect_uris": ["https://app.example.test/callback"],
        },
        headers=ADMIN,
    )
    assert resp.status_code == 201
    return resp.json()["data"]


@pytest.fixture
def alice(api, provisioned):
    resp = api.post(
        f"/v1/admin/pools/{provisioned['pool_id']}/users",
        json={"email": "alice@example.com", "password": PASSWORD, "given_name": "Alice"},
        headers=ADMIN,
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def test_startup_creates_default_pool(api):
    resp = api.get("/v1/admin/pools/default-pool", headers=ADMIN)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["client_id"] == "local-test-client"
    assert body["data"]["mfa_configuration"] == "OFF"


def test_healthz(api):
    resp = api.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["checks"]["store"]["status"] == "ok"
    assert body["checks"]["redis"]["status"] == "disabled"


def test_request_id_is_echoed(api):
    resp = api.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"

    generated = api.get("/healthz")
    assert generated.headers["X-Request-ID"]


class TestAdminAuth:
    def test_missing_key_is_forbidden(self, api):
        resp = api.get("/v1/admin/pools")
        assert resp.status_code == 403
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "forbidden"
        assert body["request_id"]

    def test_wrong_key_is_forbidden(self, api):
        resp = api.get("/v1/admin/pools", headers={"X-Admin-Key": "nope"})
        assert resp.status_code == 403


class TestErrorEnvelope:
    def test_not_found(self, api):
        resp = api.get("/v1/admin/pools/missing", headers=ADMIN)
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "not_found"
        assert error["details"] == {"pool_id": "missing"}

    def test_request_validation_is_400(self, api):
        resp = api.post("/interaction/uid-1/login", json={"email": "a@example.com"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert any(item["loc"][-1] == "password" for item in error["details"])

    def test_expired_interaction_is_410(self, api):
        resp = api.get("/interaction/gone")
        assert resp.status_code == 410
        assert resp.json()["error"]["code"] == "interaction_expired"

    def test_conflict(self, api, provisioned):
        resp = api.post(
            "/v1/admin/clients",
            json={"client_name": "Again", "client_id": "c1", "redirect_uris": ["https://x.example.test"]},
            headers=ADMIN,
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"


class TestAdminClients:
    def test_provision_returns_secret_once(self, api, provisioned, fake_engine):
        assert provisioned["client_id"] == "c1"
        assert provisioned["pool_id"] == "pool-c1"
        assert provisioned["client_secret"]

        fetched = api.get("/v1/admin/clients/c1", headers=ADMIN).json()["data"]
        assert fetched["client_secret"] is None

        reloaded = api.post("/v1/admin/clients/reload", headers=ADMIN).json()["data"]
        assert reloaded == {"reloaded": 1}
        assert [c["client_id"] for c in fake_engine.clients] == ["c1"]

    def test_empty_redirect_uris_rejected(self, api):
        resp = api.post(
            "/v1/admin/clients", json={"client_name": "Bad", "redirect_uris": []}, headers=ADMIN
        )
        assert resp.status_code == 400

    def test_user_listing_hides_password_hash(self, api, alice):
        resp = api.get(f"/v1/admin/pools/{alice['pool_id']}/users", headers=ADMIN)
        page = resp.json()["data"]
        assert [u["email"] for u in page["items"]] == ["alice@example.com"]
        assert "password_hash" not in page["items"][0]
        assert page["next_token"] is None

    def test_bad_page_token(self, api, provisioned):
        resp = api.get("/v1/admin/pools", params={"next_token": "garbage"}, headers=ADMIN)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestInteractionRoutes:
    def test_show_login_prompt(self, api, fake_engine, provisioned):
        fake_engine.start("uid-1", params={"login_hint": "alice@example.com"})
        data = api.get("/interaction/uid-1").json()["data"]
        assert data["state"] == "awaiting_login"
        assert data["data"] == {"client_id": "c1", "login_hint": "alice@example.com"}

    def test_login_sets_session_cookie_and_finishes(self, api, fake_engine, alice):
        fake_engine.start("uid-1")
        resp = api.post(
            "/interaction/uid-1/login",
            json={"email": "alice@example.com", "password": PASSWORD, "remember": True},
        )
        assert resp.status_code == 200
        assert "poolauth_session" in resp.cookies
        data = resp.json()["data"]
        assert data["state"] == "finished"
        assert data["redirect_to"] == "https://id.example.test/auth/uid-1"
        assert fake_engine.finished["uid-1"].account_id == alice["user_id"]

    def test_bad_password_retries(self, api, fake_engine, alice):
        fake_engine.start("uid-1")
        data = api.post(
            "/interaction/uid-1/login", json={"email": "alice@example.com", "password": "wrong"}
        ).json()["data"]
        assert data["state"] == "awaiting_login"
        assert data["error"] == "Invalid email or password"

    def test_login_then_backup_code(self, api, fake_engine, alice):
        from poolauth.service.runtime import get_runtime

        mfa = get_runtime().mfa

        async def enrol():
            setup = await mfa.generate_setup(alice["pool_id"], alice["user_id"])
            await mfa.verify_registration(
                alice["pool_id"], alice["user_id"], setup.device_id, generate_totp(setup.secret)
            )
            return setup

        setup = asyncio.run(enrol())
        fake_engine.start("uid-2")

        first = api.post(
            "/interaction/uid-2/login", json={"email": "alice@example.com", "password": PASSWORD}
        ).json()["data"]
        assert first["state"] == "awaiting_mfa"

        resp = api.post(
            "/interaction/uid-2/mfa/backup", json={"backup_code": setup.backup_codes[0]}
        )
        data = resp.json()["data"]
        assert data["state"] == "finished"
        assert data["data"] == {"account_id": alice["user_id"]}

        status = api.get(
            f"/v1/admin/pools/{alice['pool_id']}/users/{alice['user_id']}/mfa", headers=ADMIN
        ).json()["data"]
        assert status["mfa_enabled"] is True
        assert status["backup_codes_remaining"] == 7
        assert status["devices"][0]["backup_codes_remaining"] == 7

    def test_mfa_without_session_is_rejected(self, api, fake_engine, provisioned):
        fake_engine.start("uid-3")
        resp = api.post("/interaction/uid-3/mfa", json={"code": "123456"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "session_mismatch"

    def test_abort(self, api, fake_engine, provisioned):
        fake_engine.start("uid-4")
        data = api.post("/interaction/uid-4/abort").json()["data"]
        assert data["state"] == "aborted"
        assert fake_engine.finished["uid-4"].error == "access_denied"


class TestAdminUsers:
    def test_patch_null_clears_profile_field(self, api, alice):
        url = f"/v1/admin/pools/{alice['pool_id']}/users/{alice['user_id']}"
        api.patch(url, json={"nickname": "al"}, headers=ADMIN)

        resp = api.patch(url, json={"nickname": None}, headers=ADMIN)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["nickname"] is None
        assert data["given_name"] == "Alice"

    def test_patch_null_email_is_rejected(self, api, alice):
        resp = api.patch(
            f"/v1/admin/pools/{alice['pool_id']}/users/{alice['user_id']}",
            json={"email": None},
            headers=ADMIN,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_patch_null_group_description(self, api, provisioned):
        base = f"/v1/admin/pools/{provisioned['pool_id']}/groups"
        group = api.post(
            base, json={"group_name": "staff", "description": "Staff"}, headers=ADMIN
        ).json()["data"]

        resp = api.patch(f"{base}/{group['group_id']}", json={"description": None}, headers=ADMIN)

        assert resp.status_code == 200
        assert resp.json()["data"]["description"] is None


class TestAccountMfa:
    def _setup(self, api, alice):
        resp = api.post(
            "/v1/mfa/setup",
            json={"pool_id": alice["pool_id"], "user_id": alice["user_id"], "device_name": "Phone"},
            headers=ADMIN,
        )
        assert resp.status_code == 201
        return resp.json()["data"]

    def test_existing_user_enrols(self, api, alice):
        setup = self._setup(api, alice)
        assert setup["otpauth_uri"].startswith("otpauth://totp/")
        assert len(setup["backup_codes"]) == 8

        resp = api.post(
            "/v1/mfa/verify-setup",
            json={
                "pool_id": alice["pool_id"],
                "user_id": alice["user_id"],
                "device_id": setup["device_id"],
                "code": generate_totp(setup["secret"]),
            },
            headers=ADMIN,
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {"device_id": setup["device_id"], "mfa_enabled": True}

        resp = api.post(
            "/v1/mfa/verify-auth",
            json={
                "pool_id": alice["pool_id"],
                "user_id": alice["user_id"],
                "code": generate_totp(setup["secret"]),
            },
            headers=ADMIN,
        )
        assert resp.json()["data"] == {"device_id": setup["device_id"]}

        status = api.get(
            f"/v1/mfa/status/{alice['pool_id']}/{alice['user_id']}", headers=ADMIN
        ).json()["data"]
        assert status["mfa_enabled"] is True
        assert status["verified_devices"] == 1

    def test_wrong_setup_code_is_400(self, api, alice):
        setup = self._setup(api, alice)
        resp = api.post(
            "/v1/mfa/verify-setup",
            json={
                "pool_id": alice["pool_id"],
                "user_id": alice["user_id"],
                "device_id": setup["device_id"],
                "code": "000000",
            },
            headers=ADMIN,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"] == {"field": "code"}

    def test_wrong_auth_code_is_401(self, api, alice):
        resp = api.post(
            "/v1/mfa/verify-auth",
            json={"pool_id": alice["pool_id"], "user_id": alice["user_id"], "code": "000000"},
            headers=ADMIN,
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "mfa_verification_failed"

    def test_requires_admin_key(self, api, alice):
        resp = api.post(
            "/v1/mfa/setup", json={"pool_id": alice["pool_id"], "user_id": alice["user_id"]}
        )
        assert resp.status_code == 403


class TestAdminMfa:
    def test_force_enable_then_metrics(self, api, alice):
        resp = api.post(
            f"/v1/admin/mfa/users/{alice['pool_id']}/{alice['user_id']}/force-enable",
            headers=ADMIN,
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["mfa_required"] is True
        assert resp.json()["data"]["mfa_enabled"] is False

        metrics = api.get(
            "/v1/admin/mfa/metrics", params={"pool_id": alice["pool_id"]}, headers=ADMIN
        ).json()["data"]
        assert metrics["total_users"] == 1
        assert metrics["mfa_enabled_users"] == 0
        assert metrics["mfa_pending_users"] == 1
        assert metrics["adoption_rate"] == 0.0

    def test_pools_lists_every_pool(self, api, provisioned):
        pools = api.get("/v1/admin/mfa/pools", headers=ADMIN).json()["data"]
        assert {p["pool_id"] for p in pools} == {"default-pool", provisioned["pool_id"]}

    def test_users_and_disable(self, api, alice):
        from poolauth.service.runtime import get_runtime

        mfa = get_runtime().mfa

        async def enrol():
            setup = await mfa.generate_setup(alice["pool_id"], alice["user_id"])
            await mfa.verify_registration(
                alice["pool_id"], alice["user_id"], setup.device_id, generate_totp(setup.secret)
            )

        asyncio.run(enrol())

        page = api.get(
            "/v1/admin/mfa/users", params={"pool_id": alice["pool_id"]}, headers=ADMIN
        ).json()["data"]
        assert [item["user_id"] for item in page["items"]] == [alice["user_id"]]
        assert page["items"][0]["verified_devices"] == 1

        resp = api.post(
            f"/v1/admin/mfa/users/{alice['pool_id']}/{alice['user_id']}/disable", headers=ADMIN
        )
        assert resp.json()["data"] == {
            "removed_devices": 1,
            "mfa_enabled": False,
            "mfa_required": False,
        }
        page = api.get(
            "/v1/admin/mfa/users", params={"pool_id": alice["pool_id"]}, headers=ADMIN
        ).json()["data"]
        assert page["items"] == []

    def test_metrics_for_unknown_pool(self, api):
        resp = api.get("/v1/admin/mfa/metrics", params={"pool_id": "missing"}, headers=ADMIN)
        assert resp.status_code == 404

    def test_force_enable_unknown_user(self, api, provisioned):
        resp = api.post(
            f"/v1/admin/mfa/users/{provisioned['pool_id']}/0000000000000000deadbeef/force-enable",
            headers=ADMIN,
        )
        assert resp.status_code == 404
