"""IntegrityGuard: every hierarchy mutation goes through here.

Rules enforced:
- A node is deleted only when all of its dependent collections are empty.
  Deletion is blocked, never cascaded.
- A household has at most one head; set_household_head leaves exactly one.
- A resident's zone/barangay/municipality ids always equal its household's
  ancestor chain, including after moves.
- Account scope references are consistent with each other.

Each mutation runs in a single store transaction and re-reads the rows it
depends on with FOR UPDATE, so two concurrent deletes of the same node end
with exactly one success and one NotFound.
"""

import logging
from typing import Any

from pydantic import BaseModel

from .clock import PERMANENT_LOCKOUT
from .errors import DependencyConflict, InvalidRelationship
from .store import MODELS, PARENT_LINKS, HierarchyStore
from .schemas import BlockingChild, DeletionCheck, NodeType, UserRole

logger = logging.getLogger(__name__)


# Dependent collections that block deletion, in reporting order
DEPENDENTS: dict[NodeType, tuple[NodeType, ...]] = {
    NodeType.MUNICIPALITY: (NodeType.BARANGAY, NodeType.ADMIN),
    NodeType.BARANGAY: (NodeType.ZONE, NodeType.ADMIN),
    NodeType.ZONE: (NodeType.HOUSEHOLD, NodeType.ADMIN),
    NodeType.HOUSEHOLD: (NodeType.RESIDENT,),
    NodeType.RESIDENT: (NodeType.ADMIN,),
    NodeType.ADMIN: (),
}

# Ancestor id columns a resident carries, nearest first
RESIDENT_ANCESTRY = ("zone_id", "barangay_id", "municipality_id")


class IntegrityGuard:
    """Validates and applies hierarchy mutations through a HierarchyStore."""

    def __init__(self, store: HierarchyStore):
        self.store = store

    # =========================================================================
    # DELETION
    # =========================================================================

    def can_delete(self, node_type: NodeType, node_id: int) -> DeletionCheck:
        """Report whether a node could be deleted right now.

        Raises NotFound when the node does not exist.
        """
        self.store.get(node_type, node_id)
        return self._deletion_check(node_type, node_id)

    def delete(self, node_type: NodeType, node_id: int) -> DeletionCheck:
        """Delete a node with no dependents.

        The existence check and the dependent counts are repeated inside the
        transaction, so a check made earlier by the caller is never trusted.
        """
        with self.store.transaction():
            self.store.get(node_type, node_id, for_update=True)
            check = self._deletion_check(node_type, node_id)
            if not check.allowed:
                logger.info(
                    f"Blocked delete of {node_type.value} {node_id}: "
                    f"{[(b.child_type.value, b.count) for b in check.blocking_children]}"
                )
                raise DependencyConflict(node_type, node_id, check.blocking_children)
            self.store.delete(node_type, node_id)

        logger.info(f"Deleted {node_type.value} {node_id}")
        return check

    def _deletion_check(self, node_type: NodeType, node_id: int) -> DeletionCheck:
        blocking = []
        for child_type in DEPENDENTS[node_type]:
            count = self.store.count_children(node_type, node_id, child_type)
            if count:
                blocking.append(BlockingChild(child_type=child_type, count=count))
        return DeletionCheck(
            node_type=node_type,
            node_id=node_id,
            allowed=not blocking,
            blocking_children=blocking,
        )

    # =========================================================================
    # HOUSEHOLD HEAD
    # =========================================================================

    def set_household_head(self, household_id: int, resident_id: int) -> Any:
        """Make one resident the only head of their household."""
        with self.store.transaction():
            self._lock_household(household_id)
            resident = self.store.get(NodeType.RESIDENT, resident_id)
            if resident.household_id != household_id:
                raise InvalidRelationship(
                    f"resident {resident_id} does not belong to household {household_id}"
                )

            members = self.store.list_children(
                NodeType.HOUSEHOLD, household_id, NodeType.RESIDENT, for_update=True
            )
            for member in members:
                is_head = member.id == resident_id
                if member.is_head != is_head:
                    member.is_head = is_head
                    self.store.update(NodeType.RESIDENT, member)

        logger.info(f"Household {household_id} head set to resident {resident_id}")
        return resident

    def _lock_household(self, household_id: int) -> Any:
        # Every head write takes this lock before touching resident rows
        return self.store.get(NodeType.HOUSEHOLD, household_id, for_update=True)

    def _clear_other_heads(self, resident: Any) -> None:
        members = self.store.list_children(
            NodeType.HOUSEHOLD, resident.household_id, NodeType.RESIDENT, for_update=True
        )
        for member in members:
            if member.id != resident.id and member.is_head:
                member.is_head = False
                self.store.update(NodeType.RESIDENT, member)

    # =========================================================================
    # CREATE / UPDATE
    # =========================================================================

    def create(self, node_type: NodeType, payload: BaseModel) -> Any:
        """Insert a validated payload after checking its parent references."""
        data = payload.model_dump()

        with self.store.transaction():
            if node_type is NodeType.RESIDENT:
                if data["is_head"]:
                    self._lock_household(data["household_id"])
                data.update(self._resident_ancestry(data["household_id"], supplied=data))
            elif node_type is NodeType.ADMIN:
                data.update(self._admin_scope(data))
            elif node_type in PARENT_LINKS:
                parent_type, column = PARENT_LINKS[node_type]
                self.store.get(parent_type, data[column])

            row = MODELS[node_type](**data)
            self.store.create(node_type, row)

            if node_type is NodeType.RESIDENT and row.is_head:
                self._clear_other_heads(row)

        logger.info(f"Created {node_type.value} {row.id}")
        return row

    def update(self, node_type: NodeType, node_id: int, payload: BaseModel) -> Any:
        """Replace scalar fields. Only fields present in the payload change."""
        changes = payload.model_dump(exclude_unset=True)

        with self.store.transaction():
            if node_type is NodeType.RESIDENT and changes.get("is_head"):
                self._lock_household(self.store.get(node_type, node_id).household_id)
            row = self.store.get(node_type, node_id, for_update=True)
            for field, value in changes.items():
                setattr(row, field, value)
            self.store.update(node_type, row)

            if node_type is NodeType.RESIDENT and changes.get("is_head"):
                self._clear_other_heads(row)

        logger.info(f"Updated {node_type.value} {node_id}: {sorted(changes)}")
        return row

    def _resident_ancestry(self, household_id: int, supplied: dict | None = None) -> dict:
        """Resolve zone/barangay/municipality for a household.

        Values in ``supplied`` that disagree with the resolved chain raise
        InvalidRelationship; missing ones are filled in.
        """
        household = self.store.get(NodeType.HOUSEHOLD, household_id)
        zone = self.store.get(NodeType.ZONE, household.zone_id)
        barangay = self.store.get(NodeType.BARANGAY, zone.barangay_id)
        chain = {
            "zone_id": zone.id,
            "barangay_id": barangay.id,
            "municipality_id": barangay.municipality_id,
        }

        for column in RESIDENT_ANCESTRY:
            given = (supplied or {}).get(column)
            if given is not None and given != chain[column]:
                raise InvalidRelationship(
                    f"{column}={given} does not match household {household_id} "
                    f"({column}={chain[column]})"
                )
        return chain

    def _admin_scope(self, data: dict) -> dict:
        """Check an account's scope references and fill derivable ones."""
        role = data["role"]
        scope: dict[str, int | None] = {}

        if role is UserRole.MUNICIPALITY_ADMIN:
            self.store.get(NodeType.MUNICIPALITY, data["municipality_id"])

        elif role is UserRole.BARANGAY_ADMIN:
            barangay = self.store.get(NodeType.BARANGAY, data["barangay_id"])
            municipality_id = data.get("municipality_id")
            if municipality_id is not None and municipality_id != barangay.municipality_id:
                raise InvalidRelationship(
                    f"barangay {barangay.id} belongs to municipality "
                    f"{barangay.municipality_id}, not {municipality_id}"
                )
            scope["municipality_id"] = barangay.municipality_id

            zone_id = data.get("zone_id")
            if zone_id is not None:
                zone = self.store.get(NodeType.ZONE, zone_id)
                if zone.barangay_id != barangay.id:
                    raise InvalidRelationship(
                        f"zone {zone_id} does not belong to barangay {barangay.id}"
                    )

        elif role is UserRole.RESIDENT:
            self.store.get(NodeType.RESIDENT, data["resident_id"])

        return scope

    # =========================================================================
    # MOVE
    # =========================================================================

    def move(self, node_type: NodeType, node_id: int, new_parent_id: int) -> Any:
        """Re-parent a node, keeping every resident's ancestry consistent."""
        if node_type not in PARENT_LINKS:
            raise InvalidRelationship(f"{node_type.value} cannot be moved")
        parent_type, column = PARENT_LINKS[node_type]

        with self.store.transaction():
            row = self.store.get(node_type, node_id, for_update=True)
            self.store.get(parent_type, new_parent_id)

            if node_type in (NodeType.BARANGAY, NodeType.ZONE):
                # accounts scoped here would end up with a stale scope chain
                attached = self.store.count_children(node_type, node_id, NodeType.ADMIN)
                if attached:
                    raise DependencyConflict(
                        node_type,
                        node_id,
                        [BlockingChild(child_type=NodeType.ADMIN, count=attached)],
                    )

            old_parent_id = getattr(row, column)
            setattr(row, column, new_parent_id)

            if node_type is NodeType.RESIDENT:
                row.is_head = False
                for key, value in self._resident_ancestry(new_parent_id).items():
                    setattr(row, key, value)
            self.store.update(node_type, row)

            if node_type is not NodeType.RESIDENT:
                self._rewrite_residents_beneath(node_type, node_id)

        logger.info(
            f"Moved {node_type.value} {node_id} from {parent_type.value} "
            f"{old_parent_id} to {new_parent_id}"
        )
        return row

    def _rewrite_residents_beneath(self, node_type: NodeType, node_id: int) -> None:
        residents = self.store.list_children(node_type, node_id, NodeType.RESIDENT, for_update=True)
        if not residents:
            return

        if node_type is NodeType.BARANGAY:
            barangay = self.store.get(NodeType.BARANGAY, node_id)
            chain = {"municipality_id": barangay.municipality_id}
        elif node_type is NodeType.ZONE:
            zone = self.store.get(NodeType.ZONE, node_id)
            barangay = self.store.get(NodeType.BARANGAY, zone.barangay_id)
            chain = {"barangay_id": barangay.id, "municipality_id": barangay.municipality_id}
        else:
            chain = self._resident_ancestry(node_id)

        for resident in residents:
            for key, value in chain.items():
                setattr(resident, key, value)
            self.store.update(NodeType.RESIDENT, resident)
        logger.info(f"Rewrote ancestry of {len(residents)} residents under {node_type.value} {node_id}")

    # =========================================================================
    # ACCOUNT LIFECYCLE
    # =========================================================================

    def deactivate_admin(self, admin_id: int) -> Any:
        """Lock an account out permanently."""
        with self.store.transaction():
            account = self.store.get(NodeType.ADMIN, admin_id, for_update=True)
            account.lockout_end = PERMANENT_LOCKOUT
            self.store.update(NodeType.ADMIN, account)
        logger.info(f"Deactivated account {admin_id}")
        return account

    def reactivate_admin(self, admin_id: int) -> Any:
        with self.store.transaction():
            account = self.store.get(NodeType.ADMIN, admin_id, for_update=True)
            account.lockout_end = None
            self.store.update(NodeType.ADMIN, account)
        logger.info(f"Reactivated account {admin_id}")
        return account
