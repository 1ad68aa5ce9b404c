"""AccessGate: decide which subtrees a caller may reach.

The caller's role selects a state, and the state decides:

    SuperAdmin         everything, including system-wide views
    MunicipalityAdmin  at or beneath its municipality
    BarangayAdmin      at or beneath its barangay
    Resident           READ of its own record and household only

Scoped admins may CREATE directly beneath their own scope node but may not
WRITE the scope node itself. A scoped role with no scope id is denied
everything. Ancestry is resolved through the store's read interface; the
gate never writes.
"""

import logging
from typing import Any

from .errors import OutOfScope
from .store import PARENT_LINKS, HierarchyStore
from .schemas import (
    AccessDecision,
    CallerIdentity,
    DenialReason,
    NodeType,
    Operation,
    SubtreeRoot,
    UserRole,
)

logger = logging.getLogger(__name__)

# Landing view per role in the dashboard UI
ENTRY_VIEWS: dict[UserRole, str] = {
    UserRole.SUPER_ADMIN: "/superadmin/dashboard",
    UserRole.MUNICIPALITY_ADMIN: "/municipalityadmin/dashboard",
    UserRole.BARANGAY_ADMIN: "/barangayadmin/dashboard",
}
DEFAULT_ENTRY_VIEW = "/dashboard"

# Role -> (scope node type, CallerScope attribute)
SCOPE_ROOTS: dict[UserRole, tuple[NodeType, str]] = {
    UserRole.MUNICIPALITY_ADMIN: (NodeType.MUNICIPALITY, "municipality_id"),
    UserRole.BARANGAY_ADMIN: (NodeType.BARANGAY, "barangay_id"),
}


def entry_view(role: UserRole) -> str:
    return ENTRY_VIEWS.get(role, DEFAULT_ENTRY_VIEW)


class AccessGate:
    def __init__(self, store: HierarchyStore):
        self.store = store

    def entry_view(self, role: UserRole) -> str:
        return entry_view(role)

    def authorize(
        self,
        caller: CallerIdentity,
        target: SubtreeRoot | None,
        operation: Operation = Operation.READ,
    ) -> AccessDecision:
        """Decide whether ``caller`` may perform ``operation`` on ``target``.

        A ``None`` target is a system-wide view.
        """
        if caller.role is UserRole.SUPER_ADMIN:
            return AccessDecision(allowed=True)

        if target is None or target.node_type is NodeType.ADMIN:
            return self._deny(caller, "system-wide and account targets require SuperAdmin")

        if caller.role is UserRole.RESIDENT:
            return self._authorize_resident(caller, target, operation)

        scope_type, scope_attr = SCOPE_ROOTS[caller.role]
        scope_id = getattr(caller.scope, scope_attr)
        if scope_id is None:
            return self._deny(caller, f"{caller.role.value} has no {scope_attr}")

        ancestry = self._ancestry(target)
        if ancestry.get(scope_type) != scope_id:
            return self._deny(
                caller,
                f"{target.node_type.value} {target.node_id} is outside "
                f"{scope_type.value} {scope_id}",
            )

        is_scope_node = target.node_type is scope_type and target.node_id == scope_id
        if is_scope_node and operation is Operation.WRITE:
            return self._deny(caller, f"{caller.role.value} cannot modify its own {scope_type.value}")

        return AccessDecision(allowed=True)

    def require(
        self,
        caller: CallerIdentity,
        target: SubtreeRoot | None,
        operation: Operation = Operation.READ,
    ) -> AccessDecision:
        """Like authorize, but raise OutOfScope on denial."""
        decision = self.authorize(caller, target, operation)
        if not decision.allowed:
            raise OutOfScope(redirect_to=decision.redirect_to)
        return decision

    def _authorize_resident(
        self, caller: CallerIdentity, target: SubtreeRoot, operation: Operation
    ) -> AccessDecision:
        resident_id = caller.scope.resident_id
        if operation is not Operation.READ:
            return self._deny(caller, "residents have read-only access")
        if resident_id is None:
            return self._deny(caller, "Resident has no resident_id")

        if target.node_type is NodeType.RESIDENT and target.node_id == resident_id:
            return AccessDecision(allowed=True)
        if target.node_type is NodeType.HOUSEHOLD:
            resident = self.store.find(NodeType.RESIDENT, resident_id)
            if resident is not None and resident.household_id == target.node_id:
                return AccessDecision(allowed=True)

        return self._deny(caller, f"resident {resident_id} cannot read {target.node_type.value} {target.node_id}")

    def _ancestry(self, target: SubtreeRoot) -> dict[NodeType, int]:
        """Map of node type -> id for the target and all of its ancestors.

        Empty when the target does not exist, so unknown nodes are out of
        scope for every scoped role.
        """
        chain: dict[NodeType, int] = {}
        node_type: NodeType | None = target.node_type
        node_id: Any = target.node_id

        while node_type is not None:
            row = self.store.find(node_type, node_id)
            if row is None:
                return {}
            chain[node_type] = node_id
            if node_type not in PARENT_LINKS:
                break
            node_type, column = PARENT_LINKS[node_type]
            node_id = getattr(row, column)

        return chain

    def _deny(self, caller: CallerIdentity, why: str) -> AccessDecision:
        logger.info(f"Denied {caller.role.value}: {why}")
        return AccessDecision(
            allowed=False,
            reason=DenialReason.OUT_OF_SCOPE,
            redirect_to=entry_view(caller.role),
        )
