"""
API Tests for the Lodge Identity Core

Exercises the FastAPI app end to end over the in-memory store:
- Auth endpoints (login, register, me, refresh, verify)
- Identity administration permissions
- Lodge membership endpoints and admin transfer
- Health endpoints

Run with: pytest tests/test_api.py -v
"""

import pytest

PASSWORD = "correct-horse-battery"


@pytest.fixture
def member(store, verifier):
    return store.add_raw(
        email="member@example.org", name="Lodge Member", credential_hash=verifier.hash(PASSWORD),
        lodge_memberships=[{"lodge": "L1", "position": "SECRETARY"}],
    )


@pytest.fixture
def lodge_admin(store, verifier):
    return store.add_raw(
        email="admin@example.org", name="Lodge Admin", credential_hash=verifier.hash(PASSWORD),
        role="Lodge Admin", primary_lodge={"$oid": "L1"}, administered_lodges=["L1"],
    )


@pytest.fixture
def district_admin(store):
    return store.add_raw(email="district@example.org", name="District Admin", role="district_admin")


class TestHealth:

    def test_liveness(self, client):
        response = client.get("/api/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_root(self, client):
        response = client.get("/api/")
        assert response.status_code == 200
        assert response.headers.get("X-Request-ID")


class TestAuthEndpoints:

    def test_login_success(self, client, member):
        response = client.post("/api/auth/login", json={"email": "MEMBER@example.org", "password": PASSWORD})

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["role"] == "LODGE_MEMBER"
        assert "credential_hash" not in data["user"]

    def test_login_failures_identical(self, client, member):
        unknown = client.post("/api/auth/login", json={"email": "nobody@example.org", "password": PASSWORD})
        wrong = client.post("/api/auth/login", json={"email": member.email, "password": "wrong-password"})

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_login_inactive(self, client, member):
        member.status = "inactive"

        response = client.post("/api/auth/login", json={"email": member.email, "password": PASSWORD})

        assert response.status_code == 403
        assert response.json()["error"] == "inactive_account"

    def test_register_member(self, client):
        response = client.post("/api/auth/register", json={
            "email": "new@example.org", "password": PASSWORD, "name": "New Member", "lodges": ["L1"],
        })

        assert response.status_code == 200
        assert response.json()["user"]["role"] == "LODGE_MEMBER"

    def test_register_admin_role_forbidden(self, client):
        response = client.post("/api/auth/register", json={
            "email": "new@example.org", "password": PASSWORD, "name": "New", "role": "SUPER_ADMIN",
        })

        assert response.status_code == 403

    def test_register_duplicate(self, client, member):
        response = client.post("/api/auth/register", json={
            "email": "Member@Example.org", "password": PASSWORD, "name": "Again",
        })

        assert response.status_code == 409
        assert response.json()["error"] == "duplicate_email"

    def test_register_short_password(self, client):
        response = client.post("/api/auth/register", json={
            "email": "new@example.org", "password": "short", "name": "New",
        })

        assert response.status_code == 400

    def test_me_requires_token(self, client):
        assert client.get("/api/auth/me").status_code == 401

    def test_me(self, client, bearer, lodge_admin):
        response = client.get("/api/auth/me", headers=bearer(lodge_admin))

        assert response.status_code == 200
        data = response.json()
        assert data["role"] == "LODGE_ADMIN"
        assert data["primary_lodge"] == "L1"
        assert "credential_hash" not in data
        assert data["member_of"] == ["L1"]

    def test_token_for_deactivated_identity_rejected(self, client, bearer, member):
        headers = bearer(member)
        member.status = "inactive"

        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_verify(self, client, bearer, member):
        assert client.get("/api/auth/verify").json() == {"valid": False, "user": None}

        data = client.get("/api/auth/verify", headers=bearer(member)).json()
        assert data["valid"] is True
        assert data["user"]["email"] == member.email

    def test_refresh_picks_up_role_change(self, client, bearer, issuer, member):
        headers = bearer(member)
        member.role = "LODGE_ADMIN"

        response = client.post("/api/auth/refresh", headers=headers)

        assert response.status_code == 200
        assert issuer.verify(response.json()["token"]).role.value == "LODGE_ADMIN"

    def test_forgot_password(self, client, member, email_client):
        response = client.post("/api/auth/forgot-password", json={"email": member.email})
        unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@example.org"})

        assert response.status_code == unknown.status_code == 200
        assert response.json() == unknown.json()
        assert len(email_client.sent) == 1


class TestIdentityEndpoints:

    def test_member_cannot_read_other_identity(self, client, bearer, member, lodge_admin):
        response = client.get(f"/api/identity/{lodge_admin.id}", headers=bearer(member))
        assert response.status_code == 403

    def test_member_reads_self(self, client, bearer, member):
        response = client.get(f"/api/identity/{member.id}", headers=bearer(member))
        assert response.status_code == 200
        assert response.json()["lodge_memberships"] == [{"lodge": "L1", "position": "SECRETARY"}]

    def test_admin_lookup_by_email(self, client, bearer, lodge_admin, member):
        response = client.get("/api/identity/by-email", params={"email": "MEMBER@example.org"},
                              headers=bearer(lodge_admin))
        assert response.status_code == 200
        assert response.json()["id"] == str(member.id)

    def test_list_requires_admin(self, client, bearer, member, lodge_admin):
        assert client.get("/api/identity", headers=bearer(member)).status_code == 403

        response = client.get("/api/identity", headers=bearer(lodge_admin))
        assert response.status_code == 200
        assert response.json()["count"] == 2

    def test_unknown_identity(self, client, bearer, lodge_admin):
        response = client.get("/api/identity/00000000-0000-0000-0000-000000000000", headers=bearer(lodge_admin))
        assert response.status_code == 404

    def test_delete_admin_conflicts(self, client, bearer, district_admin, lodge_admin):
        response = client.delete(f"/api/identity/{lodge_admin.id}", headers=bearer(district_admin))
        assert response.status_code == 409

    def test_downgrade_then_delete(self, client, bearer, store, district_admin, lodge_admin):
        headers = bearer(district_admin)

        response = client.put(f"/api/identity/{lodge_admin.id}/role", json={"role": "member"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["identity"]["role"] == "LODGE_MEMBER"

        response = client.delete(f"/api/identity/{lodge_admin.id}", headers=headers)
        assert response.status_code == 200
        assert lodge_admin.id not in store.identities

    def test_lodge_admin_cannot_change_roles(self, client, bearer, lodge_admin, member):
        response = client.put(f"/api/identity/{member.id}/role", json={"role": "LODGE_ADMIN"},
                              headers=bearer(lodge_admin))
        assert response.status_code == 403

    def test_update_own_profile(self, client, bearer, member):
        response = client.put("/api/identity/me", json={"city": "Beirut", "phone": "555-0100"},
                              headers=bearer(member))

        assert response.status_code == 200
        assert response.json()["profile"] == {"city": "Beirut", "phone": "555-0100"}

    def test_own_profile_update_ignores_membership_fields(self, client, bearer, member):
        response = client.put("/api/identity/me", json={"lodges": ["L9"], "role": "SUPER_ADMIN", "bio": "Hi"},
                              headers=bearer(member))

        assert response.status_code == 200
        assert response.json()["role"] == "LODGE_MEMBER"
        assert member.lodges == []

    def test_admin_updates_lodges_and_positions(self, client, bearer, district_admin, member):
        response = client.put(
            f"/api/identity/{member.id}",
            json={"lodges": ["L1", "L2"], "lodge_positions": {"L2": "TREASURER"}},
            headers=bearer(district_admin),
        )

        assert response.status_code == 200
        assert response.json()["identity"]["lodge_memberships"] == [
            {"lodge": "L1", "position": "SECRETARY"},
            {"lodge": "L2", "position": "TREASURER"},
        ]
        positions = client.get("/api/lodges/L2/positions", headers=bearer(member))
        assert positions.json()["occupied_positions"] == ["TREASURER"]

    def test_member_update_invalid_position(self, client, bearer, district_admin, member):
        response = client.put(
            f"/api/identity/{member.id}",
            json={"lodges": ["L1"], "lodge_positions": {"L1": "GRAND_POOBAH"}},
            headers=bearer(district_admin),
        )
        assert response.status_code == 400

    def test_member_update_requires_district_admin(self, client, bearer, lodge_admin, member):
        response = client.put(f"/api/identity/{member.id}", json={"status": "inactive"},
                              headers=bearer(lodge_admin))
        assert response.status_code == 403
        assert member.status == "active"

    def test_admin_password_reset(self, client, bearer, district_admin, member, email_client):
        response = client.post(f"/api/identity/{member.id}/reset-password", headers=bearer(district_admin))

        assert response.status_code == 200
        assert response.json()["email_sent"] is True
        assert email_client.sent[0]["to"] == member.email
        login = client.post("/api/auth/login", json={"email": member.email, "password": PASSWORD})
        assert login.status_code == 401

    def test_password_reset_forbidden_for_lodge_admin(self, client, bearer, lodge_admin, member):
        response = client.post(f"/api/identity/{member.id}/reset-password", headers=bearer(lodge_admin))
        assert response.status_code == 403


class TestLodgeEndpoints:

    def test_members_require_auth(self, client):
        assert client.get("/api/lodges/L1/members").status_code == 401

    def test_members(self, client, bearer, member, lodge_admin, district_admin):
        response = client.get("/api/lodges/L1/members", headers=bearer(member))

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert {m["email"] for m in data["members"]} == {member.email, lodge_admin.email}

    def test_members_of_several_lodges(self, client, bearer, store, member, lodge_admin, district_admin):
        store.add_raw(email="other@example.org", name="Other Lodge", lodges=[{"$oid": "L2"}])

        response = client.get("/api/lodges/members", params={"lodge_id": ["L1", "L2"]},
                              headers=bearer(district_admin))

        assert response.status_code == 200
        assert response.json()["count"] == 3

    def test_members_of_several_lodges_requires_district_admin(self, client, bearer, member):
        response = client.get("/api/lodges/members", params={"lodge_id": "L1"}, headers=bearer(member))
        assert response.status_code == 403

    def test_member_count(self, client, bearer, member, lodge_admin):
        response = client.get("/api/lodges/L1/members/count", headers=bearer(member))
        assert response.json() == {"lodge_id": "L1", "count": 2}

    def test_positions(self, client, bearer, member, lodge_admin):
        response = client.get("/api/lodges/L1/positions", headers=bearer(member))
        assert response.json()["occupied_positions"] == ["SECRETARY"]

    def test_transfer_to_non_member_conflicts(self, client, bearer, store, lodge_admin):
        store.add_raw(email="outsider@example.org", name="Outsider", primary_lodge="L2")

        response = client.post(
            "/api/lodges/L1/transfer-admin",
            json={"from_email": lodge_admin.email, "to_email": "outsider@example.org"},
            headers=bearer(lodge_admin),
        )

        assert response.status_code == 409
        assert lodge_admin.role == "Lodge Admin"

    def test_transfer_admin(self, client, bearer, lodge_admin, member):
        response = client.post(
            "/api/lodges/L1/transfer-admin",
            json={"from_email": lodge_admin.email, "to_email": member.email},
            headers=bearer(lodge_admin),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["role"] == "LODGE_ADMIN"
        assert data["new_admin"]["email"] == member.email
        assert member.role == "LODGE_ADMIN"
        assert lodge_admin.role == "LODGE_MEMBER"

    def test_transfer_by_unrelated_member_forbidden(self, client, bearer, lodge_admin, member):
        response = client.post(
            "/api/lodges/L1/transfer-admin",
            json={"from_email": lodge_admin.email, "to_email": member.email},
            headers=bearer(member),
        )
        assert response.status_code == 403
