"""HTTP-level tests: authentication, owner-chain checks and error shapes.

Every test runs against a fresh ``MemoryStorage`` injected through the
``get_storage`` dependency override set up in ``conftest.py``.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from dietcim.main import app
from dietcim.security import create_access_token
from dietcim.storage import MemoryStorage, get_storage

Register = Callable[..., tuple[dict, dict[str, str]]]


def _client_payload(name: str = "Elif Demir", **extra: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "full_name": name,
        "email": "elif@example.com",
        "phone": "555-0101",
        "gender": "female",
        "height": 165,
    }
    payload.update(extra)
    return payload


def _plan_payload(name: str = "Kilo Verme Diyeti") -> dict[str, object]:
    return {
        "name": name,
        "start_date": "2024-06-01T00:00:00Z",
        "daily_calories": 1600,
        "meals": [
            {"name": "Kahvaltı", "foods": [{"name": "Yulaf", "amount": "1 kase", "calories": 150}]},
            {"name": "Öğle Yemeği", "foods": [{"name": "Mercimek çorbası"}]},
        ],
    }


def _create_client(api: TestClient, headers: dict[str, str], name: str = "Elif Demir", **extra: object) -> dict:
    resp = api.post("/api/clients", json=_client_payload(name, **extra), headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ── System ────────────────────────────────────────────────────────────────────


def test_health(api: TestClient) -> None:
    assert api.get("/health").json() == {"status": "ok"}


# ── Auth ──────────────────────────────────────────────────────────────────────


class TestAuth:
    def test_register_returns_public_user_and_token(self, api: TestClient) -> None:
        resp = api.post(
            "/api/auth/register",
            json={
                "username": "dyt_ayse",
                "password": "secret-pass",
                "email": "ayse@example.com",
                "full_name": "Ayşe Yılmaz",
            },
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["token"]
        assert body["user"]["username"] == "dyt_ayse"
        assert "password" not in body["user"]
        assert "password_hash" not in body["user"]

    def test_duplicate_username_rejected(self, api: TestClient, register: Register) -> None:
        register("dyt_ayse")
        resp = api.post(
            "/api/auth/register",
            json={
                "username": "dyt_ayse",
                "password": "another-pass",
                "email": "different@example.com",
                "full_name": "Someone Else",
            },
        )
        assert resp.status_code == 409
        assert resp.json() == {"message": "Username already taken."}

    def test_duplicate_email_rejected(self, api: TestClient, register: Register) -> None:
        register("dyt_ayse")
        resp = api.post(
            "/api/auth/register",
            json={
                "username": "dyt_other",
                "password": "another-pass",
                "email": "DYT_AYSE@example.com",
                "full_name": "Someone Else",
            },
        )
        assert resp.status_code == 409

    def test_concurrent_registrations_admit_one(
        self, api: TestClient, storage: MemoryStorage
    ) -> None:
        async def sign_up_twice() -> list[httpx.Response]:
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                return list(
                    await asyncio.gather(
                        *(
                            client.post(
                                "/api/auth/register",
                                json={
                                    "username": "dyt_dup",
                                    "password": "secret-pass",
                                    "email": f"dup{i}@example.com",
                                    "full_name": "Dup",
                                },
                            )
                            for i in range(2)
                        )
                    )
                )

        responses = asyncio.run(sign_up_twice())

        assert sorted(r.status_code for r in responses) == [201, 409]
        [winner] = [r.json()["user"] for r in responses if r.status_code == 201]
        [loser] = [r.json() for r in responses if r.status_code == 409]
        assert loser == {"message": "Username already taken."}
        stored = storage.get_user_by_username("dyt_dup")
        assert stored is not None
        assert stored.id == winner["id"]

    def test_short_password_is_validation_error(self, api: TestClient) -> None:
        resp = api.post(
            "/api/auth/register",
            json={"username": "dyt_ayse", "password": "short", "email": "a@b.c", "full_name": "A"},
        )
        assert resp.status_code == 400
        assert resp.json()["message"].startswith("Validation error")
        assert "password" in resp.json()["message"]

    def test_login_success(self, api: TestClient, register: Register) -> None:
        register("dyt_ayse", password="secret-pass")
        resp = api.post("/api/auth/login", json={"username": "dyt_ayse", "password": "secret-pass"})
        assert resp.status_code == 200
        assert resp.json()["user"]["username"] == "dyt_ayse"

    def test_wrong_password_and_unknown_user_look_identical(
        self, api: TestClient, register: Register
    ) -> None:
        register("dyt_ayse", password="secret-pass")
        wrong_password = api.post(
            "/api/auth/login", json={"username": "dyt_ayse", "password": "not-my-pass"}
        )
        unknown_user = api.post(
            "/api/auth/login", json={"username": "dyt_ghost", "password": "not-my-pass"}
        )
        assert wrong_password.status_code == unknown_user.status_code == 401
        assert wrong_password.json() == unknown_user.json()

    def test_me(self, api: TestClient, register: Register) -> None:
        user, headers = register("dyt_ayse")
        resp = api.get("/api/auth/me", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["id"] == user["id"]

    def test_me_without_token(self, api: TestClient) -> None:
        resp = api.get("/api/auth/me")
        assert resp.status_code == 401
        assert "message" in resp.json()

    def test_me_with_garbage_token(self, api: TestClient) -> None:
        resp = api.get("/api/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401

    def test_me_for_vanished_user(self, api: TestClient) -> None:
        headers = {"Authorization": f"Bearer {create_access_token(999, 'ghost')}"}
        assert api.get("/api/auth/me", headers=headers).status_code == 404


# ── Users ─────────────────────────────────────────────────────────────────────


class TestUsers:
    def test_update_own_profile(self, api: TestClient, register: Register) -> None:
        user, headers = register("dyt_ayse")
        resp = api.put(f"/api/users/{user['id']}", json={"full_name": "Dr. Ayşe"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["full_name"] == "Dr. Ayşe"
        assert resp.json()["email"] == user["email"]

    def test_cannot_update_someone_else(self, api: TestClient, register: Register) -> None:
        other, _ = register("dyt_other")
        _, headers = register("dyt_ayse")
        resp = api.put(f"/api/users/{other['id']}", json={"full_name": "Hacked"}, headers=headers)
        assert resp.status_code == 403

    def test_change_password(self, api: TestClient, register: Register) -> None:
        user, headers = register("dyt_ayse", password="secret-pass")
        resp = api.put(
            f"/api/users/{user['id']}/password",
            json={"current_password": "secret-pass", "new_password": "better-pass"},
            headers=headers,
        )
        assert resp.status_code == 200

        old = api.post("/api/auth/login", json={"username": "dyt_ayse", "password": "secret-pass"})
        new = api.post("/api/auth/login", json={"username": "dyt_ayse", "password": "better-pass"})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_change_password_requires_current(self, api: TestClient, register: Register) -> None:
        user, headers = register("dyt_ayse")
        resp = api.put(
            f"/api/users/{user['id']}/password",
            json={"current_password": "guess-pass", "new_password": "better-pass"},
            headers=headers,
        )
        assert resp.status_code == 400

    def test_telegram_settings(self, api: TestClient, register: Register) -> None:
        user, headers = register("dyt_ayse")
        resp = api.put(
            f"/api/users/{user['id']}/telegram-settings",
            json={"telegram_token": "123:abc", "telegram_chat_id": "-100200"},
            headers=headers,
        )
        body = resp.json()
        assert resp.status_code == 200
        assert body["has_telegram_token"] is True
        assert body["telegram_chat_id"] == "-100200"
        assert "telegram_token" not in body


# ── Clients ───────────────────────────────────────────────────────────────────


class TestClients:
    def test_create_and_list(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        first = _create_client(api, headers, "Elif Demir")
        second = _create_client(api, headers, "Can Öztürk")

        listed = api.get("/api/clients", headers=headers).json()
        assert [c["id"] for c in listed] == [first["id"], second["id"]]
        assert second["id"] > first["id"]

    def test_list_requires_auth(self, api: TestClient) -> None:
        assert api.get("/api/clients").status_code == 401

    def test_get_missing_client(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        assert api.get("/api/clients/999", headers=headers).status_code == 404

    @pytest.mark.parametrize("method", ["get", "put", "delete"])
    def test_other_users_client_is_forbidden(
        self, api: TestClient, register: Register, method: str
    ) -> None:
        _, owner_headers = register("dyt_owner")
        client = _create_client(api, owner_headers)
        _, intruder_headers = register("dyt_intruder")

        kwargs: dict[str, object] = {"headers": intruder_headers}
        if method == "put":
            kwargs["json"] = {"notes": "mine now"}
        resp = getattr(api, method)(f"/api/clients/{client['id']}", **kwargs)

        assert resp.status_code == 403
        assert "message" in resp.json()
        assert "Elif Demir" not in resp.text
        # Nothing changed for the owner.
        assert api.get(f"/api/clients/{client['id']}", headers=owner_headers).json() == client

    def test_partial_update(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers, notes="Vegetarian")
        resp = api.put(f"/api/clients/{client['id']}", json={"is_active": False}, headers=headers)

        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert resp.json()["notes"] == "Vegetarian"

    def test_delete_cascades(self, api: TestClient, register: Register, storage: MemoryStorage) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        api.post(f"/api/clients/{client['id']}/measurements", json={"weight": 70}, headers=headers)
        api.post(f"/api/clients/{client['id']}/diet-plans", json=_plan_payload(), headers=headers)

        resp = api.delete(f"/api/clients/{client['id']}", headers=headers)
        assert resp.status_code == 204
        assert api.get(f"/api/clients/{client['id']}", headers=headers).status_code == 404
        assert api.get("/api/diet-plans", headers=headers).json() == []
        assert storage.list_measurements(client["id"]) == []


# ── Measurements ──────────────────────────────────────────────────────────────


class TestMeasurements:
    def test_listed_newest_first_with_bmi(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        url = f"/api/clients/{client['id']}/measurements"
        for day, weight in [("2024-05-08", 71), ("2024-05-15", 70), ("2024-05-01", 72)]:
            resp = api.post(url, json={"date": f"{day}T08:00:00Z", "weight": weight}, headers=headers)
            assert resp.status_code == 201

        listed = api.get(url, headers=headers).json()
        assert [m["date"][:10] for m in listed] == ["2024-05-15", "2024-05-08", "2024-05-01"]
        assert listed[0]["bmi"] == 25.7

    def test_other_users_client_is_forbidden(self, api: TestClient, register: Register) -> None:
        _, owner_headers = register("dyt_owner")
        client = _create_client(api, owner_headers)
        _, intruder_headers = register("dyt_intruder")
        url = f"/api/clients/{client['id']}/measurements"

        assert api.get(url, headers=intruder_headers).status_code == 403
        assert api.post(url, json={"weight": 50}, headers=intruder_headers).status_code == 403

    def test_update_and_delete(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        measurement = api.post(
            f"/api/clients/{client['id']}/measurements", json={"weight": 70, "waist": 80}, headers=headers
        ).json()

        resp = api.put(f"/api/measurements/{measurement['id']}", json={"waist": 78}, headers=headers)
        assert resp.json()["waist"] == 78
        assert resp.json()["weight"] == 70

        assert api.delete(f"/api/measurements/{measurement['id']}", headers=headers).status_code == 204
        assert api.delete(f"/api/measurements/{measurement['id']}", headers=headers).status_code == 404

    def test_negative_weight_is_validation_error(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        resp = api.post(f"/api/clients/{client['id']}/measurements", json={"weight": -5}, headers=headers)
        assert resp.status_code == 400


# ── Diet plans ────────────────────────────────────────────────────────────────


class TestDietPlans:
    def test_creation_logs_activity_with_both_names(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers, "Elif Demir")
        resp = api.post(f"/api/clients/{client['id']}/diet-plans", json=_plan_payload(), headers=headers)
        assert resp.status_code == 201
        assert [m["name"] for m in resp.json()["meals"]] == ["Kahvaltı", "Öğle Yemeği"]

        latest = api.get("/api/activities?limit=1", headers=headers).json()[0]
        assert latest["type"] == "diet_plan"
        assert "Elif Demir" in latest["description"]
        assert "Kilo Verme Diyeti" in latest["description"]

    def test_update_and_ownership(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        plan = api.post(f"/api/clients/{client['id']}/diet-plans", json=_plan_payload(), headers=headers).json()

        resp = api.put(f"/api/diet-plans/{plan['id']}", json={"is_active": False}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert resp.json()["meals"] == plan["meals"]

        _, intruder_headers = register("dyt_intruder")
        assert api.put(
            f"/api/diet-plans/{plan['id']}", json={"name": "x"}, headers=intruder_headers
        ).status_code == 403
        assert api.get(f"/api/diet-plans/{plan['id']}", headers=intruder_headers).status_code == 403
        assert api.put("/api/diet-plans/999", json={"name": "x"}, headers=headers).status_code == 404

    def test_end_before_start_rejected(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        payload = _plan_payload() | {"end_date": "2024-05-01T00:00:00Z"}
        resp = api.post(f"/api/clients/{client['id']}/diet-plans", json=payload, headers=headers)
        assert resp.status_code == 400

    def test_update_cannot_end_before_start(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        plan = api.post(f"/api/clients/{client['id']}/diet-plans", json=_plan_payload(), headers=headers).json()

        resp = api.put(
            f"/api/diet-plans/{plan['id']}",
            json={"end_date": "2024-01-01T00:00:00Z"},
            headers=headers,
        )

        assert resp.status_code == 400
        assert resp.json()["message"].startswith("Validation error")
        assert api.get(f"/api/diet-plans/{plan['id']}", headers=headers).json() == plan

    def test_list_for_user_and_client(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        a = _create_client(api, headers, "A")
        b = _create_client(api, headers, "B")
        api.post(f"/api/clients/{a['id']}/diet-plans", json=_plan_payload("P1"), headers=headers)
        api.post(f"/api/clients/{b['id']}/diet-plans", json=_plan_payload("P2"), headers=headers)

        assert [p["name"] for p in api.get("/api/diet-plans", headers=headers).json()] == ["P1", "P2"]
        assert [
            p["name"] for p in api.get(f"/api/clients/{b['id']}/diet-plans", headers=headers).json()
        ] == ["P2"]


# ── Appointments ──────────────────────────────────────────────────────────────


class TestAppointments:
    def _payload(self, client_id: int, **extra: object) -> dict[str, object]:
        payload: dict[str, object] = {
            "client_id": client_id,
            "date": "2024-06-15T10:30:00Z",
            "duration": 45,
            "type": "online",
        }
        payload.update(extra)
        return payload

    def test_create_update_and_list(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        resp = api.post("/api/appointments", json=self._payload(client["id"]), headers=headers)
        assert resp.status_code == 201
        appointment = resp.json()
        assert appointment["status"] == "scheduled"

        resp = api.put(f"/api/appointments/{appointment['id']}", json={"status": "completed"}, headers=headers)
        assert resp.json()["status"] == "completed"
        assert resp.json()["duration"] == 45

        assert [a["id"] for a in api.get("/api/appointments", headers=headers).json()] == [appointment["id"]]
        assert len(api.get(f"/api/clients/{client['id']}/appointments", headers=headers).json()) == 1

    def test_client_must_exist_and_be_owned(self, api: TestClient, register: Register) -> None:
        _, owner_headers = register("dyt_owner")
        client = _create_client(api, owner_headers)
        _, intruder_headers = register("dyt_intruder")

        assert api.post("/api/appointments", json=self._payload(999), headers=intruder_headers).status_code == 404
        assert api.post(
            "/api/appointments", json=self._payload(client["id"]), headers=intruder_headers
        ).status_code == 403

    def test_unknown_type_is_validation_error(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        client = _create_client(api, headers)
        resp = api.post("/api/appointments", json=self._payload(client["id"], type="phone"), headers=headers)
        assert resp.status_code == 400

    def test_other_users_appointment_is_forbidden(self, api: TestClient, register: Register) -> None:
        _, owner_headers = register("dyt_owner")
        client = _create_client(api, owner_headers)
        appointment = api.post("/api/appointments", json=self._payload(client["id"]), headers=owner_headers).json()
        _, intruder_headers = register("dyt_intruder")

        url = f"/api/appointments/{appointment['id']}"
        assert api.put(url, json={"status": "cancelled"}, headers=intruder_headers).status_code == 403
        assert api.delete(url, headers=intruder_headers).status_code == 403
        assert api.delete(url, headers=owner_headers).status_code == 204


# ── Activities ────────────────────────────────────────────────────────────────


class TestActivities:
    def test_limit_returns_most_recent(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        for i in range(1, 6):
            _create_client(api, headers, f"Client {i}")

        resp = api.get("/api/activities?limit=2", headers=headers)
        assert resp.status_code == 200
        descriptions = [a["description"] for a in resp.json()]
        assert len(descriptions) == 2
        assert "Client 5" in descriptions[0]
        assert "Client 4" in descriptions[1]

    def test_zero_limit_returns_everything(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        for i in range(3):
            _create_client(api, headers, f"Client {i}")
        assert len(api.get("/api/activities?limit=0", headers=headers).json()) == 3

    def test_non_numeric_limit(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        assert api.get("/api/activities?limit=abc", headers=headers).status_code == 400

    def test_feeds_are_private(self, api: TestClient, register: Register) -> None:
        _, owner_headers = register("dyt_owner")
        _create_client(api, owner_headers)
        _, other_headers = register("dyt_other")
        assert api.get("/api/activities", headers=other_headers).json() == []


# ── Blog ──────────────────────────────────────────────────────────────────────


class TestBlog:
    def test_public_listing_with_limit(self, api: TestClient, storage: MemoryStorage) -> None:
        storage.load_seed_articles()
        resp = api.get("/api/blog?limit=2")
        assert resp.status_code == 200
        assert len(resp.json()) == 2

    def test_single_article(self, api: TestClient, storage: MemoryStorage) -> None:
        storage.load_seed_articles()
        assert api.get("/api/blog/1").json()["id"] == 1
        assert api.get("/api/blog/999").status_code == 404


# ── Dashboard ─────────────────────────────────────────────────────────────────


class TestDashboard:
    def test_stats(self, api: TestClient, register: Register) -> None:
        _, headers = register("dyt_ayse")
        active = _create_client(api, headers, "Active")
        _create_client(api, headers, "Inactive", is_active=False)
        api.post(f"/api/clients/{active['id']}/diet-plans", json=_plan_payload(), headers=headers)

        now = datetime.now(tz=timezone.utc)
        for when in (now, now + timedelta(days=2)):
            api.post(
                "/api/appointments",
                json={"client_id": active["id"], "date": when.isoformat(), "duration": 30, "type": "in-person"},
                headers=headers,
            )

        stats = api.get("/api/dashboard/stats", headers=headers).json()
        assert stats == {
            "active_clients": 1,
            "today_appointments": 1,
            "active_diet_plans": 1,
            "notification_messages": 0,
        }


# ── Errors ────────────────────────────────────────────────────────────────────


class _BrokenStorage(MemoryStorage):
    def list_clients(self, user_id: int) -> list:  # type: ignore[override]
        raise RuntimeError("disk on fire")


def test_unhandled_error_is_generic_500() -> None:
    app.dependency_overrides[get_storage] = lambda: _BrokenStorage(bcrypt_rounds=4)
    try:
        api = TestClient(app, raise_server_exceptions=False)
        headers = {"Authorization": f"Bearer {create_access_token(1, 'dyt_ayse')}"}
        resp = api.get("/api/clients", headers=headers)
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 500
    assert resp.json() == {"message": "Internal server error"}
    assert "disk on fire" not in resp.text
