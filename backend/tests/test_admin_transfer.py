"""
Unit Tests for Admin Transfer

Tests:
- Candidate must be a member of the lodge
- Roles and administered lodges swap together
- District lodge transfers DISTRICT_ADMIN, other lodges LODGE_ADMIN
- Who may initiate a transfer
- A failed write leaves both identities unchanged

Run with: pytest tests/test_admin_transfer.py -v
"""

import pytest

from identity.errors import NotFound, PermissionDenied, PreconditionFailed
from identity.roles import Role
from services.auth import AuthUser

from conftest import auth_user_for


@pytest.fixture
def lodge_admin(store):
    return store.add_raw(
        email="admin@example.org", name="Current Admin",
        role=Role.LODGE_ADMIN.value, primary_lodge="L1", administered_lodges=["L1"],
    )


@pytest.fixture
def lodge_member(store):
    return store.add_raw(
        email="member@example.org", name="Lodge Member",
        lodge_memberships=[{"lodge": "L1", "position": "SENIOR_WARDEN"}],
    )


class TestTransferPreconditions:

    @pytest.mark.asyncio
    async def test_candidate_not_a_member(self, store, transfers, lodge_admin):
        outsider = store.add_raw(email="outsider@example.org", name="Outsider", primary_lodge="L2")

        with pytest.raises(PreconditionFailed):
            await transfers.transfer_admin(
                "L1", lodge_admin.email, outsider.email, actor=auth_user_for(lodge_admin),
            )

        assert lodge_admin.role == Role.LODGE_ADMIN.value
        assert outsider.role == Role.LODGE_MEMBER.value
        assert not [a for a in store.audit if a["action"] == "admin_transfer"]

    @pytest.mark.asyncio
    async def test_current_admin_lacks_role(self, store, transfers, lodge_member):
        impostor = store.add_raw(email="impostor@example.org", name="Impostor", primary_lodge="L1")

        with pytest.raises(PermissionDenied):
            await transfers.transfer_admin(
                "L1", impostor.email, lodge_member.email, actor=auth_user_for(impostor),
            )

    @pytest.mark.asyncio
    async def test_actor_must_be_current_admin_or_super_admin(self, store, transfers, lodge_admin, lodge_member):
        bystander = store.add_raw(
            email="district@example.org", name="District", role=Role.DISTRICT_ADMIN.value,
        )

        with pytest.raises(PermissionDenied):
            await transfers.transfer_admin(
                "L1", lodge_admin.email, lodge_member.email, actor=auth_user_for(bystander),
            )

    @pytest.mark.asyncio
    async def test_same_person(self, transfers, lodge_admin):
        with pytest.raises(PreconditionFailed):
            await transfers.transfer_admin(
                "L1", lodge_admin.email, "ADMIN@example.org", actor=auth_user_for(lodge_admin),
            )

    @pytest.mark.asyncio
    async def test_unknown_identities(self, transfers, lodge_admin):
        with pytest.raises(NotFound):
            await transfers.transfer_admin(
                "L1", lodge_admin.email, "nobody@example.org", actor=auth_user_for(lodge_admin),
            )
        with pytest.raises(NotFound):
            await transfers.transfer_admin(
                "L1", "nobody@example.org", lodge_admin.email, actor=auth_user_for(lodge_admin),
            )

    @pytest.mark.asyncio
    async def test_lodge_id_required(self, transfers, lodge_admin, lodge_member):
        with pytest.raises(ValueError):
            await transfers.transfer_admin(
                "", lodge_admin.email, lodge_member.email, actor=auth_user_for(lodge_admin),
            )


class TestTransferOutcome:

    @pytest.mark.asyncio
    async def test_roles_swap(self, store, transfers, lodge_admin, lodge_member):
        result = await transfers.transfer_admin(
            "L1", lodge_admin.email, lodge_member.email, actor=auth_user_for(lodge_admin),
        )

        assert result.role == Role.LODGE_ADMIN
        assert lodge_admin.role == Role.LODGE_MEMBER.value
        assert lodge_admin.administered_lodges == []
        assert lodge_member.role == Role.LODGE_ADMIN.value
        assert lodge_member.administered_lodges == ["L1"]

        body = result.to_dict()
        assert body["success"] is True
        assert body["previous_admin"]["email"] == "admin@example.org"
        assert body["new_admin"]["role"] == "LODGE_ADMIN"

        entries = [a for a in store.audit if a["action"] == "admin_transfer"]
        assert len(entries) == 2
        assert {e["performed_by"] for e in entries} == {"admin@example.org"}

    @pytest.mark.asyncio
    async def test_super_admin_can_transfer(self, store, transfers, lodge_admin, lodge_member):
        root = store.add_raw(email="root@example.org", name="Root", role=Role.SUPER_ADMIN.value)

        await transfers.transfer_admin(
            "L1", lodge_admin.email, lodge_member.email, actor=auth_user_for(root),
        )

        assert lodge_member.role == Role.LODGE_ADMIN.value

    @pytest.mark.asyncio
    async def test_other_administered_lodges_kept(self, store, transfers, lodge_member):
        admin = store.add_raw(
            email="multi@example.org", name="Multi", role="lodge_admin",
            administered_lodges=["L1", {"$oid": "L5"}],
        )

        await transfers.transfer_admin("L1", admin.email, lodge_member.email, actor=auth_user_for(admin))

        assert admin.administered_lodges == ["L5"]

    @pytest.mark.asyncio
    async def test_typed_lodge_membership_counts(self, store, transfers, lodge_admin):
        typed = store.add_raw(
            email="typed@example.org", name="Typed",
            lodge_memberships=[{"lodge": {"$oid": "L1"}, "position": "MEMBER"}],
        )

        await transfers.transfer_admin("L1", lodge_admin.email, typed.email, actor=auth_user_for(lodge_admin))

        assert typed.role == Role.LODGE_ADMIN.value

    @pytest.mark.asyncio
    async def test_district_lodge_transfers_district_admin(self, store, transfers):
        district_admin = store.add_raw(
            email="da@example.org", name="District Admin",
            role=Role.DISTRICT_ADMIN.value, primary_lodge="district-lodge",
        )
        successor = store.add_raw(email="next@example.org", name="Next", lodges=["district-lodge"])

        result = await transfers.transfer_admin(
            "district-lodge", district_admin.email, successor.email, actor=auth_user_for(district_admin),
        )

        assert result.role == Role.DISTRICT_ADMIN
        assert successor.role == Role.DISTRICT_ADMIN.value
        assert district_admin.role == Role.LODGE_MEMBER.value

    @pytest.mark.asyncio
    async def test_failed_write_changes_nothing(self, store, transfers, lodge_admin, lodge_member):
        store.fail_next_commit = True

        with pytest.raises(RuntimeError):
            await transfers.transfer_admin(
                "L1", lodge_admin.email, lodge_member.email, actor=auth_user_for(lodge_admin),
            )

        assert lodge_admin.role == Role.LODGE_ADMIN.value
        assert lodge_admin.administered_lodges == ["L1"]
        assert lodge_member.role == Role.LODGE_MEMBER.value
        assert lodge_member.administered_lodges == []

    @pytest.mark.asyncio
    async def test_actor_from_token_claims(self, store, transfers, lodge_admin, lodge_member):
        actor = AuthUser(id=str(lodge_admin.id), email=lodge_admin.email, role=Role.LODGE_ADMIN)

        result = await transfers.transfer_admin("L1", lodge_admin.email, lodge_member.email, actor=actor)

        assert result.new_admin.email == lodge_member.email

    @pytest.mark.asyncio
    async def test_higher_ranked_candidate_keeps_role(self, store, transfers, lodge_admin):
        root = store.add_raw(
            email="root@example.org", name="Root", role=Role.SUPER_ADMIN.value, lodges=["L1"],
        )

        result = await transfers.transfer_admin(
            "L1", lodge_admin.email, root.email, actor=auth_user_for(lodge_admin),
        )

        assert result.role == Role.LODGE_ADMIN
        assert root.role == Role.SUPER_ADMIN.value
        assert root.administered_lodges == ["L1"]
        assert lodge_admin.role == Role.LODGE_MEMBER.value

    @pytest.mark.asyncio
    async def test_district_admin_candidate_not_demoted(self, store, transfers, lodge_admin):
        district = store.add_raw(
            email="district@example.org", name="District", role="district admin", primary_lodge="L1",
        )

        await transfers.transfer_admin("L1", lodge_admin.email, district.email, actor=auth_user_for(lodge_admin))

        assert district.role == Role.DISTRICT_ADMIN.value
