"""SQLAlchemy models for the Atlas administrative hierarchy.

Data Architecture Overview:
- Municipality → Barangay → Zone → Household → Resident, every edge a
  foreign key with ON DELETE RESTRICT
- Children reference parents by id only; no relationship collections are
  mapped, so nothing cascades and nothing loads a subtree implicitly
- Resident carries denormalised zone/barangay/municipality ids that must
  always equal its household's ancestor chain (kept true by IntegrityGuard)
- AdminAccount is a cross-cutting account attached at one level

References:
- See atlas/schemas.py for Pydantic validation models
- See atlas/integrity.py for the rules that keep these tables consistent
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .clock import utc_now
from .database import Base
from .schemas import UserRole


class Municipality(Base):
    """A municipality (city or town) within a province."""

    __tablename__ = "municipalities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(20), nullable=False)
    region: Mapped[str] = mapped_column(String(100), nullable=False)
    province: Mapped[str] = mapped_column(String(100), nullable=False)
    land_area: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        doc="Square kilometres. Used for population density when known."
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<Municipality {self.code}: {self.name}>"


class Barangay(Base):
    """The smallest administrative division, belonging to one municipality."""

    __tablename__ = "barangays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(20), nullable=False)
    municipality_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("municipalities.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<Barangay {self.code}: {self.name}>"


class Zone(Base):
    """A zone (purok/sitio) inside a barangay."""

    __tablename__ = "zones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    barangay_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("barangays.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<Zone {self.id}: {self.name}>"


class Household(Base):
    __tablename__ = "households"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    zone_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("zones.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<Household {self.id}: {self.name}>"


class Resident(Base):
    """A person registered in a household.

    household_id is authoritative. zone_id, barangay_id and municipality_id
    are copies of the household's ancestor chain for scoped queries.
    """

    __tablename__ = "residents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    middle_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    birthdate: Mapped[date] = mapped_column(Date, nullable=False)
    gender: Mapped[str | None] = mapped_column(String(20))
    civil_status: Mapped[str | None] = mapped_column(String(30))
    occupation: Mapped[str | None] = mapped_column(String(100))
    email: Mapped[str | None] = mapped_column(String(255))
    address: Mapped[str | None] = mapped_column(Text)

    household_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("households.id", ondelete="RESTRICT"), nullable=False
    )
    zone_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("zones.id", ondelete="RESTRICT"), nullable=False
    )
    barangay_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("barangays.id", ondelete="RESTRICT"), nullable=False
    )
    municipality_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("municipalities.id", ondelete="RESTRICT"), nullable=False
    )

    is_head: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index("ix_residents_household", "household_id"),
        Index("ix_residents_zone", "zone_id"),
        Index("ix_residents_barangay", "barangay_id"),
        Index("ix_residents_municipality", "municipality_id"),
    )

    def __repr__(self) -> str:
        return f"<Resident {self.id}: {self.first_name} {self.last_name}>"


class AdminAccount(Base):
    """An account attached at one level of the hierarchy.

    Active means lockout_end is unset or strictly in the past.
    """

    __tablename__ = "admin_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole), nullable=False, index=True)

    municipality_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("municipalities.id", ondelete="RESTRICT"), index=True
    )
    barangay_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("barangays.id", ondelete="RESTRICT"), index=True
    )
    zone_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("zones.id", ondelete="RESTRICT"), index=True
    )
    resident_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("residents.id", ondelete="RESTRICT"), index=True
    )

    lockout_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    login_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<AdminAccount {self.email} ({self.role.value})>"
