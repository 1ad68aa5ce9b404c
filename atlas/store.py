"""Hierarchy store: the only place the core touches persistence.

HierarchyStore is the read/write interface the IntegrityGuard, the
AggregationEngine and the AccessGate are written against. SqlAlchemyStore is
the shipped implementation over a SQLAlchemy Session (Postgres in production,
SQLite in tests).

Navigation is always by id through ``get``/``list_children``; no ORM object
graph is ever walked.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from functools import wraps
from typing import Any, Iterator

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import Conflict, NotFound, Unavailable
from .models import AdminAccount, Barangay, Household, Municipality, Resident, Zone
from .schemas import NodeType

logger = logging.getLogger(__name__)


# =============================================================================
# HIERARCHY LINKS
# =============================================================================

MODELS: dict[NodeType, type] = {
    NodeType.MUNICIPALITY: Municipality,
    NodeType.BARANGAY: Barangay,
    NodeType.ZONE: Zone,
    NodeType.HOUSEHOLD: Household,
    NodeType.RESIDENT: Resident,
    NodeType.ADMIN: AdminAccount,
}

# child type -> (parent type, parent id column) for the authoritative chain
PARENT_LINKS: dict[NodeType, tuple[NodeType, str]] = {
    NodeType.BARANGAY: (NodeType.MUNICIPALITY, "municipality_id"),
    NodeType.ZONE: (NodeType.BARANGAY, "barangay_id"),
    NodeType.HOUSEHOLD: (NodeType.ZONE, "zone_id"),
    NodeType.RESIDENT: (NodeType.HOUSEHOLD, "household_id"),
}

# (parent type, child type) -> column on the child holding the parent id.
# Includes the denormalised resident columns and account scope columns.
CHILD_LINKS: dict[tuple[NodeType, NodeType], str] = {
    (NodeType.MUNICIPALITY, NodeType.BARANGAY): "municipality_id",
    (NodeType.MUNICIPALITY, NodeType.RESIDENT): "municipality_id",
    (NodeType.MUNICIPALITY, NodeType.ADMIN): "municipality_id",
    (NodeType.BARANGAY, NodeType.ZONE): "barangay_id",
    (NodeType.BARANGAY, NodeType.RESIDENT): "barangay_id",
    (NodeType.BARANGAY, NodeType.ADMIN): "barangay_id",
    (NodeType.ZONE, NodeType.HOUSEHOLD): "zone_id",
    (NodeType.ZONE, NodeType.RESIDENT): "zone_id",
    (NodeType.ZONE, NodeType.ADMIN): "zone_id",
    (NodeType.HOUSEHOLD, NodeType.RESIDENT): "household_id",
    (NodeType.RESIDENT, NodeType.ADMIN): "resident_id",
}


def child_column(parent_type: NodeType, child_type: NodeType) -> str:
    try:
        return CHILD_LINKS[(parent_type, child_type)]
    except KeyError:
        raise ValueError(
            f"{child_type.value} is not a child of {parent_type.value}"
        ) from None


# =============================================================================
# INTERFACE
# =============================================================================


class HierarchyStore(ABC):
    """Abstract read/write access to the entity collections."""

    @abstractmethod
    def find(self, node_type: NodeType, node_id: int, for_update: bool = False) -> Any | None:
        """Return the row or None."""

    def get(self, node_type: NodeType, node_id: int, for_update: bool = False) -> Any:
        """Return the row or raise NotFound."""
        row = self.find(node_type, node_id, for_update=for_update)
        if row is None:
            raise NotFound(node_type, node_id)
        return row

    @abstractmethod
    def list(self, node_type: NodeType, for_update: bool = False, **filters: Any) -> list[Any]:
        """All rows of a type matching equality filters, ordered by id."""

    def list_children(
        self,
        parent_type: NodeType,
        parent_id: int,
        child_type: NodeType,
        for_update: bool = False,
    ) -> list[Any]:
        column = child_column(parent_type, child_type)
        return self.list(child_type, for_update=for_update, **{column: parent_id})

    @abstractmethod
    def count_children(self, parent_type: NodeType, parent_id: int, child_type: NodeType) -> int:
        ...

    @abstractmethod
    def create(self, node_type: NodeType, row: Any) -> Any:
        ...

    @abstractmethod
    def update(self, node_type: NodeType, row: Any) -> Any:
        ...

    @abstractmethod
    def delete(self, node_type: NodeType, node_id: int) -> None:
        ...

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager: commit on success, roll back on error."""

    @abstractmethod
    def snapshot(self) -> Any:
        """Context manager: one consistent read view for every query inside."""


# =============================================================================
# SQLALCHEMY IMPLEMENTATION
# =============================================================================


def _translate_errors(method):
    """Map driver failures onto the error taxonomy."""

    @wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Store rejected write in {method.__name__}: {e.orig}")
            raise Conflict("Write conflicts with existing data") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Store failure in {method.__name__}: {e}")
            raise Unavailable() from e

    return wrapper


class SqlAlchemyStore(HierarchyStore):
    """HierarchyStore over a SQLAlchemy Session.

    The session is owned by the caller (FastAPI's get_db dependency or a
    script). Transactions nest: only the outermost ``transaction()`` commits.
    """

    def __init__(self, session: Session):
        self.session = session
        self._depth = 0

    @property
    def dialect(self) -> str:
        return self.session.get_bind().dialect.name

    @_translate_errors
    def find(self, node_type: NodeType, node_id: int, for_update: bool = False) -> Any | None:
        model = MODELS[node_type]
        stmt = select(model).where(model.id == node_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    @_translate_errors
    def list(self, node_type: NodeType, for_update: bool = False, **filters: Any) -> list[Any]:
        model = MODELS[node_type]
        stmt = select(model).filter_by(**filters).order_by(model.id)
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.session.execute(stmt).scalars())

    @_translate_errors
    def count_children(self, parent_type: NodeType, parent_id: int, child_type: NodeType) -> int:
        model = MODELS[child_type]
        column = getattr(model, child_column(parent_type, child_type))
        stmt = select(func.count()).select_from(model).where(column == parent_id)
        return self.session.execute(stmt).scalar_one()

    @_translate_errors
    def create(self, node_type: NodeType, row: Any) -> Any:
        self.session.add(row)
        self.session.flush()
        return row

    @_translate_errors
    def update(self, node_type: NodeType, row: Any) -> Any:
        self.session.flush()
        return row

    @_translate_errors
    def delete(self, node_type: NodeType, node_id: int) -> None:
        row = self.get(node_type, node_id)
        self.session.delete(row)
        self.session.flush()

    @contextmanager
    def transaction(self) -> Iterator["SqlAlchemyStore"]:
        self._depth += 1
        try:
            yield self
            if self._depth == 1:
                self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Store rejected commit: {e.orig}")
            raise Conflict("Write conflicts with existing data") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Store failure during transaction: {e}")
            raise Unavailable() from e
        except Exception:
            if self._depth == 1:
                self.session.rollback()
            raise
        finally:
            self._depth -= 1

    @contextmanager
    def snapshot(self) -> Iterator["SqlAlchemyStore"]:
        # Inside an open transaction every read already shares one view
        if self._depth or self.session.in_transaction():
            yield self
            return

        try:
            if self.dialect == "postgresql":
                self.session.connection(
                    execution_options={"isolation_level": "REPEATABLE READ"}
                )
            elif self.dialect == "sqlite":
                # pysqlite defers BEGIN until the first write; reads need it now
                self.session.connection().exec_driver_sql("BEGIN")
            else:
                self.session.connection()
        except SQLAlchemyError as e:
            logger.error(f"Could not open snapshot: {e}")
            raise Unavailable() from e

        try:
            yield self
        finally:
            # read-only: release the snapshot without writing anything
            self.session.rollback()
