"""
IntegrityGuard tests: guarded deletion, household heads, creation rules,
moves and the account lifecycle.
"""

from datetime import date

import pytest
from pydantic import ValidationError

from atlas.clock import PERMANENT_LOCKOUT, as_utc
from atlas.errors import DependencyConflict, InvalidRelationship, NotFound
from atlas.schemas import (
    AdminAccountCreate,
    AdminAccountUpdate,
    BarangayCreate,
    BarangayUpdate,
    HouseholdUpdate,
    MunicipalityCreate,
    MunicipalityUpdate,
    NodeType,
    ResidentCreate,
    ResidentUpdate,
    UserRole,
    ZoneCreate,
    ZoneUpdate,
)
from conftest import add_admin, add_household, add_resident


def heads_of(store, household_id):
    members = store.list_children(NodeType.HOUSEHOLD, household_id, NodeType.RESIDENT)
    return [r.id for r in members if r.is_head]


@pytest.fixture
def store_calls(store, monkeypatch):
    """Record the order of row lookups and inserts made through the store."""
    calls = []
    find, create = store.find, store.create

    def recording_find(node_type, node_id, for_update=False):
        calls.append(("find", node_type, node_id, for_update))
        return find(node_type, node_id, for_update=for_update)

    def recording_create(node_type, row):
        calls.append(("create", node_type))
        return create(node_type, row)

    monkeypatch.setattr(store, "find", recording_find)
    monkeypatch.setattr(store, "create", recording_create)
    return calls


# ============================================
# Deletion
# ============================================

class TestCanDelete:
    def test_barangay_with_zones_is_blocked(self, guard, ajuy):
        """Adcadarao has two zones and no households."""
        check = guard.can_delete(NodeType.BARANGAY, ajuy["barangay_id"])

        assert check.allowed is False
        assert [(b.child_type, b.count) for b in check.blocking_children] == [(NodeType.ZONE, 2)]

    def test_barangay_deletable_once_zones_are_gone(self, guard, store, ajuy):
        """Deleting both zones unblocks the barangay; afterwards it is gone."""
        for zone_id in ajuy["zone_ids"]:
            guard.delete(NodeType.ZONE, zone_id)

        check = guard.can_delete(NodeType.BARANGAY, ajuy["barangay_id"])
        assert check.allowed is True
        assert check.blocking_children == []

        guard.delete(NodeType.BARANGAY, ajuy["barangay_id"])
        with pytest.raises(NotFound):
            store.get(NodeType.BARANGAY, ajuy["barangay_id"])

    def test_missing_node_is_not_found(self, guard, ajuy):
        with pytest.raises(NotFound):
            guard.can_delete(NodeType.ZONE, 9999)

    def test_municipality_lists_every_blocking_collection(self, guard, ajuy):
        """Barangays and admins are both reported, in that order."""
        add_admin(guard, "mayor@ajuy.gov.ph", municipality_id=ajuy["municipality_id"])

        check = guard.can_delete(NodeType.MUNICIPALITY, ajuy["municipality_id"])

        assert [(b.child_type, b.count) for b in check.blocking_children] == [
            (NodeType.BARANGAY, 1),
            (NodeType.ADMIN, 1),
        ]

    def test_resident_linked_to_account_is_blocked(self, guard, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        resident = add_resident(guard, household.id)
        add_admin(guard, "juan@example.com", role=UserRole.RESIDENT, resident_id=resident.id)

        check = guard.can_delete(NodeType.RESIDENT, resident.id)

        assert check.allowed is False
        assert check.blocking_children[0].child_type is NodeType.ADMIN


class TestDelete:
    def test_blocked_delete_leaves_node_unchanged(self, guard, store, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        add_resident(guard, household.id)

        with pytest.raises(DependencyConflict) as exc_info:
            guard.delete(NodeType.HOUSEHOLD, household.id)

        assert [(b.child_type, b.count) for b in exc_info.value.blocking_children] == [
            (NodeType.RESIDENT, 1)
        ]
        assert store.get(NodeType.HOUSEHOLD, household.id).name == "Dela Cruz Household"

    def test_leaf_delete_succeeds(self, guard, store, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        resident = add_resident(guard, household.id)

        guard.delete(NodeType.RESIDENT, resident.id)

        with pytest.raises(NotFound):
            store.get(NodeType.RESIDENT, resident.id)

    def test_second_delete_is_not_found(self, guard, ajuy):
        zone_id = ajuy["zone_ids"][1]
        guard.delete(NodeType.ZONE, zone_id)

        with pytest.raises(NotFound):
            guard.delete(NodeType.ZONE, zone_id)

    def test_delete_is_never_cascaded(self, guard, store, ajuy):
        """A blocked municipality keeps its whole subtree."""
        with pytest.raises(DependencyConflict):
            guard.delete(NodeType.MUNICIPALITY, ajuy["municipality_id"])

        assert store.count_children(NodeType.BARANGAY, ajuy["barangay_id"], NodeType.ZONE) == 2


# ============================================
# Household head
# ============================================

class TestHouseholdHead:
    def test_head_swap(self, guard, store, ajuy):
        """Making R2 head clears R1 in the same transaction."""
        household = add_household(guard, ajuy["zone_ids"][0])
        r1 = add_resident(guard, household.id, "Juan", is_head=True)
        r2 = add_resident(guard, household.id, "Maria", gender="Female")

        guard.set_household_head(household.id, r2.id)

        assert heads_of(store, household.id) == [r2.id]
        assert store.get(NodeType.RESIDENT, r1.id).is_head is False

    def test_resident_from_other_household_is_rejected(self, guard, store, ajuy):
        h1 = add_household(guard, ajuy["zone_ids"][0], "Household A")
        h2 = add_household(guard, ajuy["zone_ids"][0], "Household B")
        head = add_resident(guard, h1.id, is_head=True)
        outsider = add_resident(guard, h2.id, "Pedro")

        with pytest.raises(InvalidRelationship):
            guard.set_household_head(h1.id, outsider.id)

        assert heads_of(store, h1.id) == [head.id]

    def test_missing_household_or_resident(self, guard, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])

        with pytest.raises(NotFound):
            guard.set_household_head(9999, 1)
        with pytest.raises(NotFound):
            guard.set_household_head(household.id, 9999)

    def test_new_head_on_create_replaces_old(self, guard, store, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        add_resident(guard, household.id, "Juan", is_head=True)
        second = add_resident(guard, household.id, "Maria", is_head=True)

        assert heads_of(store, household.id) == [second.id]

    def test_update_to_head_replaces_old(self, guard, store, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        add_resident(guard, household.id, "Juan", is_head=True)
        second = add_resident(guard, household.id, "Maria")

        guard.update(NodeType.RESIDENT, second.id, ResidentUpdate(is_head=True))

        assert heads_of(store, household.id) == [second.id]

    def test_repeated_swaps_always_leave_one_head(self, guard, store, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        r1 = add_resident(guard, household.id, "Juan", is_head=True)
        r2 = add_resident(guard, household.id, "Maria", gender="Female")
        r3 = add_resident(guard, household.id, "Jose")

        for resident in [r2, r3, r3, r1, r2, r2]:
            guard.set_household_head(household.id, resident.id)
            assert heads_of(store, household.id) == [resident.id]


class TestHouseholdLock:
    """Every head write locks the household row before touching residents."""

    def test_set_household_head_locks_household_first(self, guard, store_calls, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        resident = add_resident(guard, household.id)
        store_calls.clear()

        guard.set_household_head(household.id, resident.id)

        assert store_calls[0] == ("find", NodeType.HOUSEHOLD, household.id, True)

    def test_creating_a_head_locks_household_before_insert(self, guard, store_calls, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        store_calls.clear()

        add_resident(guard, household.id, is_head=True)

        lock = store_calls.index(("find", NodeType.HOUSEHOLD, household.id, True))
        assert lock < store_calls.index(("create", NodeType.RESIDENT))

    def test_creating_a_member_takes_no_lock(self, guard, store_calls, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        store_calls.clear()

        add_resident(guard, household.id)

        assert ("find", NodeType.HOUSEHOLD, household.id, True) not in store_calls

    def test_updating_to_head_locks_household_before_resident(self, guard, store_calls, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        resident = add_resident(guard, household.id)
        store_calls.clear()

        guard.update(NodeType.RESIDENT, resident.id, ResidentUpdate(is_head=True))

        lock = store_calls.index(("find", NodeType.HOUSEHOLD, household.id, True))
        assert lock < store_calls.index(("find", NodeType.RESIDENT, resident.id, True))


# ============================================
# Create / update
# ============================================

class TestCreate:
    def test_resident_ancestry_is_filled_from_household(self, guard, ajuy):
        household = add_household(guard, ajuy["zone_ids"][1])

        resident = add_resident(guard, household.id)

        assert resident.zone_id == ajuy["zone_ids"][1]
        assert resident.barangay_id == ajuy["barangay_id"]
        assert resident.municipality_id == ajuy["municipality_id"]

    def test_resident_with_wrong_zone_is_rejected(self, guard, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])

        with pytest.raises(InvalidRelationship):
            add_resident(guard, household.id, zone_id=ajuy["zone_ids"][1])

    def test_missing_parent_is_not_found(self, guard, ajuy):
        with pytest.raises(NotFound):
            guard.create(NodeType.ZONE, ZoneCreate(name="Zone 3", barangay_id=9999))

    def test_codes_are_uppercased(self, guard):
        municipality = guard.create(
            NodeType.MUNICIPALITY,
            MunicipalityCreate(name="Barotac Viejo", code="bv", region="Region VI", province="Iloilo"),
        )
        assert municipality.code == "BV"

    def test_future_birthdate_is_rejected(self):
        with pytest.raises(ValidationError):
            ResidentCreate(
                first_name="Juan", last_name="Dela Cruz",
                birthdate=date(2999, 1, 1), household_id=1,
            )

    def test_barangay_admin_gets_municipality_from_barangay(self, guard, ajuy):
        account = add_admin(
            guard, "kap@adcadarao.gov.ph", role=UserRole.BARANGAY_ADMIN,
            barangay_id=ajuy["barangay_id"],
        )
        assert account.municipality_id == ajuy["municipality_id"]

    def test_barangay_admin_with_foreign_municipality_is_rejected(self, guard, ajuy):
        other = guard.create(
            NodeType.MUNICIPALITY,
            MunicipalityCreate(name="Sara", code="SAR", region="Region VI", province="Iloilo"),
        )
        with pytest.raises(InvalidRelationship):
            add_admin(
                guard, "kap@adcadarao.gov.ph", role=UserRole.BARANGAY_ADMIN,
                barangay_id=ajuy["barangay_id"], municipality_id=other.id,
            )

    def test_scope_shape_is_checked_by_schema(self):
        """MunicipalityAdmin needs a municipality; SuperAdmin carries none."""
        with pytest.raises(ValidationError):
            AdminAccountCreate(
                email="a@b.ph", first_name="A", last_name="B", role=UserRole.MUNICIPALITY_ADMIN,
            )
        with pytest.raises(ValidationError):
            AdminAccountCreate(
                email="a@b.ph", first_name="A", last_name="B", role=UserRole.SUPER_ADMIN,
                municipality_id=1,
            )

    def test_update_payload_rejects_parent_fields(self):
        with pytest.raises(ValidationError):
            ResidentUpdate(household_id=2)


class TestUpdate:
    @pytest.mark.parametrize(
        "schema, field",
        [
            (MunicipalityUpdate, "name"),
            (MunicipalityUpdate, "code"),
            (MunicipalityUpdate, "region"),
            (BarangayUpdate, "code"),
            (ZoneUpdate, "name"),
            (HouseholdUpdate, "name"),
            (ResidentUpdate, "last_name"),
            (ResidentUpdate, "birthdate"),
            (ResidentUpdate, "is_head"),
            (ResidentUpdate, "is_active"),
            (AdminAccountUpdate, "email"),
        ],
    )
    def test_explicit_null_for_required_field_is_rejected(self, schema, field):
        with pytest.raises(ValidationError, match=f"{field} cannot be null"):
            schema.model_validate({field: None})

    def test_explicit_null_clears_optional_field(self, guard, ajuy):
        zone_id = ajuy["zone_ids"][0]

        zone = guard.update(NodeType.ZONE, zone_id, ZoneUpdate(description=None))

        assert zone.description is None
        assert zone.name == "Zone 1"

    def test_omitted_fields_keep_their_value(self, guard, ajuy):
        household = add_household(guard, ajuy["zone_ids"][0])
        resident = add_resident(guard, household.id, is_head=True)

        updated = guard.update(NodeType.RESIDENT, resident.id, ResidentUpdate(occupation="Farmer"))

        assert updated.occupation == "Farmer"
        assert updated.is_head is True
        assert updated.first_name == "Juan"


# ============================================
# Move
# ============================================

class TestMove:
    def test_household_move_rewrites_resident_zone(self, guard, store, ajuy):
        zone1, zone2 = ajuy["zone_ids"]
        household = add_household(guard, zone1)
        resident = add_resident(guard, household.id)

        guard.move(NodeType.HOUSEHOLD, household.id, zone2)

        assert store.get(NodeType.HOUSEHOLD, household.id).zone_id == zone2
        assert store.get(NodeType.RESIDENT, resident.id).zone_id == zone2

    def test_zone_move_rewrites_barangay_and_municipality(self, guard, store, ajuy):
        sara = guard.create(
            NodeType.MUNICIPALITY,
            MunicipalityCreate(name="Sara", code="SAR", region="Region VI", province="Iloilo"),
        )
        target = guard.create(
            NodeType.BARANGAY, BarangayCreate(name="Aspera", code="ASP", municipality_id=sara.id)
        )
        zone_id = ajuy["zone_ids"][0]
        household = add_household(guard, zone_id)
        resident = add_resident(guard, household.id)

        guard.move(NodeType.ZONE, zone_id, target.id)

        moved = store.get(NodeType.RESIDENT, resident.id)
        assert (moved.zone_id, moved.barangay_id, moved.municipality_id) == (
            zone_id, target.id, sara.id,
        )

    def test_resident_move_drops_head_flag(self, guard, store, ajuy):
        h1 = add_household(guard, ajuy["zone_ids"][0], "Household A")
        h2 = add_household(guard, ajuy["zone_ids"][1], "Household B")
        resident = add_resident(guard, h1.id, is_head=True)

        guard.move(NodeType.RESIDENT, resident.id, h2.id)

        moved = store.get(NodeType.RESIDENT, resident.id)
        assert moved.household_id == h2.id
        assert moved.zone_id == ajuy["zone_ids"][1]
        assert moved.is_head is False

    def test_municipality_cannot_move(self, guard, ajuy):
        with pytest.raises(InvalidRelationship):
            guard.move(NodeType.MUNICIPALITY, ajuy["municipality_id"], 1)

    def test_move_to_missing_parent(self, guard, ajuy):
        with pytest.raises(NotFound):
            guard.move(NodeType.ZONE, ajuy["zone_ids"][0], 9999)

    def test_barangay_with_admins_cannot_move(self, guard, ajuy):
        sara = guard.create(
            NodeType.MUNICIPALITY,
            MunicipalityCreate(name="Sara", code="SAR", region="Region VI", province="Iloilo"),
        )
        add_admin(
            guard, "kap@adcadarao.gov.ph", role=UserRole.BARANGAY_ADMIN,
            barangay_id=ajuy["barangay_id"],
        )

        with pytest.raises(DependencyConflict):
            guard.move(NodeType.BARANGAY, ajuy["barangay_id"], sara.id)


# ============================================
# Account lifecycle
# ============================================

class TestAdminLifecycle:
    def test_deactivate_then_reactivate(self, guard, store, ajuy):
        account = add_admin(guard, "mayor@ajuy.gov.ph", municipality_id=ajuy["municipality_id"])

        guard.deactivate_admin(account.id)
        assert as_utc(store.get(NodeType.ADMIN, account.id).lockout_end) == PERMANENT_LOCKOUT

        guard.reactivate_admin(account.id)
        assert store.get(NodeType.ADMIN, account.id).lockout_end is None

    def test_unknown_account(self, guard):
        with pytest.raises(NotFound):
            guard.deactivate_admin(42)
