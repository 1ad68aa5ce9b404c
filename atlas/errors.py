"""Error taxonomy shared by the store, the guard, the gate and the transport.

Every error carries a stable ``kind`` and the HTTP status the transport maps
it to. Handlers in atlas/main.py turn them into JSON bodies via ``to_dict``.
"""

from .schemas import BlockingChild, NodeType


class AtlasError(Exception):
    """Base class for errors the transport knows how to report."""

    kind = "Error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class NotFound(AtlasError):
    kind = "NotFound"
    status_code = 404

    def __init__(self, node_type: NodeType, node_id: int):
        super().__init__(f"{node_type.value} {node_id} not found")
        self.node_type = node_type
        self.node_id = node_id


class DependencyConflict(AtlasError):
    """A node still has live children, so it cannot be removed or moved."""

    kind = "DependencyConflict"
    status_code = 409

    def __init__(self, node_type: NodeType, node_id: int, blocking_children: list[BlockingChild]):
        summary = ", ".join(f"{b.count} {b.child_type.value}" for b in blocking_children)
        super().__init__(f"{node_type.value} {node_id} still has dependents: {summary}")
        self.node_type = node_type
        self.node_id = node_id
        self.blocking_children = blocking_children

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["blocking_children"] = [b.model_dump(mode="json") for b in self.blocking_children]
        return body


class InvalidRelationship(AtlasError):
    """A write would break a parent/child or denormalisation rule."""

    kind = "InvalidRelationship"
    status_code = 422


class OutOfScope(AtlasError):
    kind = "OutOfScope"
    status_code = 403

    def __init__(self, message: str = "Caller is not allowed to access this subtree",
                 redirect_to: str | None = None):
        super().__init__(message)
        self.redirect_to = redirect_to

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["redirect_to"] = self.redirect_to
        return body


class Conflict(AtlasError):
    """The store rejected a write (unique or foreign key violation)."""

    kind = "Conflict"
    status_code = 409


class Unavailable(AtlasError):
    """The store failed or timed out. Details stay in the logs."""

    kind = "Unavailable"
    status_code = 503

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"detail": self.message}
