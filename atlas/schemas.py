"""Pydantic validation schemas for the Atlas hierarchy.

Schema Engineering Philosophy:
- Field descriptions document the contract the transport layer serializes
- Validators enforce the structural rules a payload can check on its own;
  rules that need other rows (parent exists, ancestor chain matches) belong
  to the IntegrityGuard
- Update payloads forbid parent-reference fields: re-parenting is an explicit
  move, never a side effect of an update

Hierarchy:
    Municipality → Barangay → Zone → Household → Resident
    AdminAccount attaches at Municipality, Barangay or Zone level
"""

from datetime import date, datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# ENUMS: Canonical value sets
# =============================================================================


class UserRole(str, Enum):
    """Account roles. Each role is also a state of the AccessGate."""

    SUPER_ADMIN = "SuperAdmin"
    """Full access to every subtree and to system-wide views."""

    MUNICIPALITY_ADMIN = "MunicipalityAdmin"
    """Manages one municipality and everything beneath it."""

    BARANGAY_ADMIN = "BarangayAdmin"
    """Manages one barangay and everything beneath it."""

    RESIDENT = "Resident"
    """Read-only access to the resident's own record and household."""


class NodeType(str, Enum):
    """Entity collections reachable through the hierarchy store."""

    MUNICIPALITY = "municipality"
    BARANGAY = "barangay"
    ZONE = "zone"
    HOUSEHOLD = "household"
    RESIDENT = "resident"
    ADMIN = "admin"


class Operation(str, Enum):
    """What a caller wants to do with a subtree root."""

    READ = "read"
    """View the node or anything beneath it."""

    CREATE = "create"
    """Add a child directly beneath the node."""

    WRITE = "write"
    """Update, move or delete the node itself."""


class DenialReason(str, Enum):
    """Why the AccessGate refused a request."""

    OUT_OF_SCOPE = "OutOfScope"


# Roles counted as administrators in statistics
ADMIN_ROLES = (UserRole.MUNICIPALITY_ADMIN, UserRole.BARANGAY_ADMIN)


# =============================================================================
# CREATE / UPDATE PAYLOADS
# =============================================================================


class PartialUpdate(BaseModel):
    """Base for update payloads: omitted fields keep their stored value.

    Fields listed in ``not_null`` may be omitted but never sent as null,
    because the columns behind them are NOT NULL.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    not_null: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def reject_explicit_nulls(self):
        nulls = [
            name for name in self.not_null
            if name in self.model_fields_set and getattr(self, name) is None
        ]
        if nulls:
            raise ValueError(f"{', '.join(nulls)} cannot be null")
        return self



class MunicipalityCreate(BaseModel):
    """A municipality (city or town) within a province."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, description="Municipality name (e.g., 'Ajuy').")
    code: str = Field(min_length=1, max_length=20, description="Short code (e.g., 'AJY').")
    region: str = Field(min_length=1, max_length=100, description="Region (e.g., 'Region VI (Western Visayas)').")
    province: str = Field(min_length=1, max_length=100, description="Province (e.g., 'Iloilo').")
    land_area: float | None = Field(
        default=None,
        gt=0,
        description="Land area in square kilometres. Enables population density."
    )

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.upper()


class MunicipalityUpdate(PartialUpdate):
    not_null = ("name", "code", "region", "province")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    code: str | None = Field(default=None, min_length=1, max_length=20)
    region: str | None = Field(default=None, min_length=1, max_length=100)
    province: str | None = Field(default=None, min_length=1, max_length=100)
    land_area: float | None = Field(default=None, gt=0)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str | None) -> str | None:
        return v.upper() if v else v


class BarangayCreate(BaseModel):
    """The smallest administrative division, belonging to one municipality."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, description="Barangay name (e.g., 'Adcadarao').")
    code: str = Field(min_length=1, max_length=20, description="Short code (e.g., 'ADC').")
    municipality_id: int = Field(gt=0, description="Parent municipality.")

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.upper()


class BarangayUpdate(PartialUpdate):
    not_null = ("name", "code")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    code: str | None = Field(default=None, min_length=1, max_length=20)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str | None) -> str | None:
        return v.upper() if v else v


class ZoneCreate(BaseModel):
    """A zone (purok/sitio) inside a barangay."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, description="Zone name (e.g., 'Zone 1').")
    description: str | None = Field(default=None, description="Free-form description.")
    barangay_id: int = Field(gt=0, description="Parent barangay.")


class ZoneUpdate(PartialUpdate):
    not_null = ("name",)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None


class HouseholdCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=150, description="Display name (e.g., 'Dela Cruz Household').")
    zone_id: int = Field(gt=0, description="Parent zone.")


class HouseholdUpdate(PartialUpdate):
    not_null = ("name",)

    name: str | None = Field(default=None, min_length=1, max_length=150)


class ResidentCreate(BaseModel):
    """A person registered in a household.

    zone_id, barangay_id and municipality_id are denormalised copies of the
    household's ancestor chain. They may be omitted; the IntegrityGuard fills
    them in and rejects values that disagree with the chain.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(min_length=1, max_length=100)
    middle_name: str | None = Field(default=None, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    birthdate: date = Field(description="Date of birth. Cannot be in the future.")
    gender: str | None = Field(default=None, max_length=20, examples=["Male", "Female"])
    civil_status: str | None = Field(
        default=None, max_length=30, examples=["Single", "Married", "Widowed"]
    )
    occupation: str | None = Field(default=None, max_length=100)
    email: str | None = Field(default=None, max_length=255)
    address: str | None = Field(default=None, description="Street address as written on the form.")

    household_id: int = Field(gt=0, description="Household the resident lives in.")
    zone_id: int | None = Field(default=None, gt=0)
    barangay_id: int | None = Field(default=None, gt=0)
    municipality_id: int | None = Field(default=None, gt=0)

    is_head: bool = Field(default=False, description="True if head of the household.")
    is_active: bool = Field(default=True, description="False for moved-out or deceased residents.")

    @field_validator("birthdate")
    @classmethod
    def birthdate_not_in_future(cls, v: date) -> date:
        if v > date.today():
            raise ValueError("birthdate cannot be in the future")
        return v


class ResidentUpdate(PartialUpdate):
    not_null = ("first_name", "last_name", "birthdate", "is_head", "is_active")

    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    middle_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    birthdate: date | None = None
    gender: str | None = Field(default=None, max_length=20)
    civil_status: str | None = Field(default=None, max_length=30)
    occupation: str | None = Field(default=None, max_length=100)
    email: str | None = Field(default=None, max_length=255)
    address: str | None = None
    is_head: bool | None = None
    is_active: bool | None = None

    @field_validator("birthdate")
    @classmethod
    def birthdate_not_in_future(cls, v: date | None) -> date | None:
        if v is not None and v > date.today():
            raise ValueError("birthdate cannot be in the future")
        return v


class AdminAccountCreate(BaseModel):
    """An account attached at one level of the hierarchy.

    Scope rules per role:
    - SuperAdmin: no scope
    - MunicipalityAdmin: municipality_id only
    - BarangayAdmin: barangay_id required; municipality_id and zone_id optional
      (checked against the barangay by the IntegrityGuard)
    - Resident: resident_id only
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, description="Login email. Unique.")
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: UserRole

    municipality_id: int | None = Field(default=None, gt=0)
    barangay_id: int | None = Field(default=None, gt=0)
    zone_id: int | None = Field(default=None, gt=0)
    resident_id: int | None = Field(default=None, gt=0)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.lower()

    @model_validator(mode="after")
    def validate_scope_for_role(self) -> "AdminAccountCreate":
        """Ensure the scope references match what the role can carry."""
        scope = {
            "municipality_id": self.municipality_id,
            "barangay_id": self.barangay_id,
            "zone_id": self.zone_id,
            "resident_id": self.resident_id,
        }
        allowed = {
            UserRole.SUPER_ADMIN: set(),
            UserRole.MUNICIPALITY_ADMIN: {"municipality_id"},
            UserRole.BARANGAY_ADMIN: {"municipality_id", "barangay_id", "zone_id"},
            UserRole.RESIDENT: {"resident_id"},
        }[self.role]
        required = {
            UserRole.MUNICIPALITY_ADMIN: "municipality_id",
            UserRole.BARANGAY_ADMIN: "barangay_id",
            UserRole.RESIDENT: "resident_id",
        }.get(self.role)

        extra = sorted(k for k, v in scope.items() if v is not None and k not in allowed)
        if extra:
            raise ValueError(f"{self.role.value} accounts cannot carry {', '.join(extra)}")
        if required and scope[required] is None:
            raise ValueError(f"{self.role.value} accounts require {required}")
        return self


class AdminAccountUpdate(PartialUpdate):
    not_null = ("email", "first_name", "last_name")

    email: str | None = Field(default=None, min_length=3, max_length=255)
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.lower()


class MoveRequest(BaseModel):
    """Request body for re-parenting a node."""
    new_parent_id: int = Field(gt=0, description="Id of the new parent node.")


class HouseholdHeadRequest(BaseModel):
    """Request body for choosing the head of a household."""
    resident_id: int = Field(gt=0)


CREATE_SCHEMAS: dict[NodeType, type[BaseModel]] = {
    NodeType.MUNICIPALITY: MunicipalityCreate,
    NodeType.BARANGAY: BarangayCreate,
    NodeType.ZONE: ZoneCreate,
    NodeType.HOUSEHOLD: HouseholdCreate,
    NodeType.RESIDENT: ResidentCreate,
    NodeType.ADMIN: AdminAccountCreate,
}

UPDATE_SCHEMAS: dict[NodeType, type[BaseModel]] = {
    NodeType.MUNICIPALITY: MunicipalityUpdate,
    NodeType.BARANGAY: BarangayUpdate,
    NodeType.ZONE: ZoneUpdate,
    NodeType.HOUSEHOLD: HouseholdUpdate,
    NodeType.RESIDENT: ResidentUpdate,
    NodeType.ADMIN: AdminAccountUpdate,
}


# =============================================================================
# READ MODELS
# =============================================================================


class MunicipalityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: str
    region: str
    province: str
    land_area: float | None = None


class BarangayRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: str
    municipality_id: int


class ZoneRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    barangay_id: int


class HouseholdRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    zone_id: int


class ResidentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    middle_name: str | None = None
    last_name: str
    birthdate: date
    gender: str | None = None
    civil_status: str | None = None
    occupation: str | None = None
    email: str | None = None
    address: str | None = None
    household_id: int
    zone_id: int
    barangay_id: int
    municipality_id: int
    is_head: bool
    is_active: bool


class AdminAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: UserRole
    municipality_id: int | None = None
    barangay_id: int | None = None
    zone_id: int | None = None
    resident_id: int | None = None
    lockout_end: datetime | None = None


READ_SCHEMAS: dict[NodeType, type[BaseModel]] = {
    NodeType.MUNICIPALITY: MunicipalityRead,
    NodeType.BARANGAY: BarangayRead,
    NodeType.ZONE: ZoneRead,
    NodeType.HOUSEHOLD: HouseholdRead,
    NodeType.RESIDENT: ResidentRead,
    NodeType.ADMIN: AdminAccountRead,
}


# =============================================================================
# INTEGRITY RESULTS
# =============================================================================


class BlockingChild(BaseModel):
    """A non-empty dependent collection that blocks a deletion."""
    child_type: NodeType
    count: int = Field(ge=1)


class DeletionCheck(BaseModel):
    """Result of IntegrityGuard.can_delete."""
    node_type: NodeType
    node_id: int
    allowed: bool
    blocking_children: list[BlockingChild] = Field(default_factory=list)


# =============================================================================
# STATISTICS
# =============================================================================


class SystemStatistics(BaseModel):
    """System-wide counts across the whole hierarchy."""
    total_municipalities: int = 0
    total_barangays: int = 0
    total_zones: int = 0
    total_households: int = 0
    total_residents: int = 0
    total_admins: int = 0
    active_admins: int = 0
    inactive_admins: int = 0
    admins_by_role: dict[str, int] = Field(default_factory=dict)
    average_household_size: float = Field(
        default=0,
        description="total_residents / total_households rounded to 2 places; 0 with no households."
    )


class ZoneStatistic(BaseModel):
    """Per-zone counts inside a barangay breakdown."""
    zone_id: int
    zone_name: str
    household_count: int
    resident_count: int


class BarangayStatistics(BaseModel):
    barangay_id: int
    barangay_name: str
    total_zones: int = 0
    total_households: int = 0
    total_residents: int = 0
    average_household_size: float = 0
    active_residents: int = 0
    household_heads: int = 0
    zone_statistics: list[ZoneStatistic] = Field(default_factory=list)


class MunicipalityStatistics(BaseModel):
    """Roll-up of one municipality's subtree."""
    municipality_id: int
    municipality_name: str
    total_barangays: int = Field(default=0, description="Direct children only.")
    total_zones: int = 0
    total_households: int = 0
    total_residents: int = 0
    average_household_size: float = 0
    active_admins: int = Field(default=0, description="Active admins scoped inside this municipality.")
    population_density: float | None = Field(
        default=None,
        description="Residents per square kilometre; omitted when no land area is known."
    )
    barangay_statistics: list[BarangayStatistics] = Field(default_factory=list)


class SystemOverview(BaseModel):
    """Everything the super-admin dashboard shows, from one snapshot."""
    system_statistics: SystemStatistics
    municipality_statistics: list[MunicipalityStatistics] = Field(default_factory=list)
    active_admins: int = 0
    inactive_admins: int = 0
    last_updated: datetime


class ZoneStatistics(BaseModel):
    zone_id: int
    zone_name: str
    barangay_name: str
    total_households: int = 0
    total_residents: int = 0
    average_household_size: float = 0
    active_residents: int = 0
    household_heads: int = 0
    gender_distribution: dict[str, int] = Field(default_factory=dict)


class BarangayCount(BaseModel):
    barangay_id: int
    barangay_name: str
    count: int


class HouseholdStatistics(BaseModel):
    total_households: int = 0
    average_household_size: float = 0
    households_by_barangay: list[BarangayCount] = Field(default_factory=list)
    household_distribution: dict[str, int] = Field(
        default_factory=dict,
        description="Households keyed by member count bucket: '0' .. '5', '6+'."
    )


class ResidentStatistics(BaseModel):
    total_residents: int = 0
    active_residents: int = 0
    household_heads: int = 0
    average_age: float = 0
    gender_distribution: dict[str, int] = Field(default_factory=dict)
    age_distribution: dict[str, int] = Field(default_factory=dict)
    residents_by_barangay: list[BarangayCount] = Field(default_factory=list)


class MunicipalityReport(BaseModel):
    generated_at: datetime
    municipality_statistics: MunicipalityStatistics
    household_statistics: HouseholdStatistics
    resident_statistics: ResidentStatistics
    summary: str


# =============================================================================
# ACCESS
# =============================================================================


class CallerScope(BaseModel):
    """Hierarchy references attached to an authenticated caller."""
    municipality_id: int | None = None
    barangay_id: int | None = None
    zone_id: int | None = None
    resident_id: int | None = None


class CallerIdentity(BaseModel):
    """Role and scope resolved upstream from a credential."""
    role: UserRole
    scope: CallerScope = Field(default_factory=CallerScope)


class SubtreeRoot(BaseModel):
    """The node a request is rooted at."""
    node_type: NodeType
    node_id: int


class AccessDecision(BaseModel):
    allowed: bool
    reason: DenialReason | None = None
    redirect_to: str | None = Field(
        default=None,
        description="Entry view the UI should send a denied caller to."
    )
