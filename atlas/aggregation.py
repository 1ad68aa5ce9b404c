"""AggregationEngine: roll raw hierarchy rows up into statistics.

Every public call opens one store snapshot, loads each hierarchy level once
and folds the rows bottom-up (resident → household → zone → barangay →
municipality). Residents are attributed through the authoritative
household_id chain, so a municipality's counts are always the sum of its
barangays' counts.

Rows whose parent is missing from the snapshot are skipped with a warning.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from .clock import Clock, as_utc, utc_now
from .store import HierarchyStore
from .schemas import (
    ADMIN_ROLES,
    BarangayCount,
    BarangayStatistics,
    HouseholdStatistics,
    MunicipalityReport,
    MunicipalityStatistics,
    NodeType,
    ResidentStatistics,
    SystemOverview,
    SystemStatistics,
    ZoneStatistic,
    ZoneStatistics,
)

logger = logging.getLogger(__name__)

AGE_BRACKETS = (
    ("0-17", 0, 17),
    ("18-34", 18, 34),
    ("35-59", 35, 59),
    ("60+", 60, None),
)

HOUSEHOLD_SIZE_BUCKETS = ("0", "1", "2", "3", "4", "5", "6+")


def average_household_size(residents: int, households: int) -> float:
    """Residents per household rounded to 2 places, 0 when there are no households."""
    if households == 0:
        return 0.0
    return round(residents / households, 2)


def is_account_active(account: Any, now: datetime) -> bool:
    """Active means no lockout, or a lockout strictly in the past."""
    if account.lockout_end is None:
        return True
    return as_utc(account.lockout_end) < now


def age_on(birthdate: date, today: date) -> int:
    before_birthday = (today.month, today.day) < (birthdate.month, birthdate.day)
    return today.year - birthdate.year - before_birthday


def age_bracket(age: int) -> str:
    for label, low, high in AGE_BRACKETS:
        if age >= low and (high is None or age <= high):
            return label
    return AGE_BRACKETS[0][0]


def household_size_bucket(size: int) -> str:
    return str(size) if size < 6 else "6+"


# =============================================================================
# SNAPSHOT FOLD
# =============================================================================


@dataclass
class _Tally:
    """Counts for one node's subtree."""

    zones: int = 0
    households: int = 0
    residents: int = 0
    active_residents: int = 0
    heads: int = 0

    def add(self, other: "_Tally") -> None:
        self.zones += other.zones
        self.households += other.households
        self.residents += other.residents
        self.active_residents += other.active_residents
        self.heads += other.heads


@dataclass
class _Hierarchy:
    """One load of every level, folded into per-node tallies."""

    municipalities: list = field(default_factory=list)
    barangays: list = field(default_factory=list)
    zones: list = field(default_factory=list)
    households: list = field(default_factory=list)
    residents: list = field(default_factory=list)
    accounts: list = field(default_factory=list)

    zone_tally: dict[int, _Tally] = field(default_factory=dict)
    barangay_tally: dict[int, _Tally] = field(default_factory=dict)
    municipality_tally: dict[int, _Tally] = field(default_factory=dict)

    # row lists per node, for distributions
    residents_by_zone: dict[int, list] = field(default_factory=dict)
    residents_by_household: dict[int, list] = field(default_factory=dict)
    households_by_barangay: dict[int, list] = field(default_factory=dict)

    municipality_of_barangay: dict[int, int] = field(default_factory=dict)
    barangay_of_zone: dict[int, int] = field(default_factory=dict)

    @classmethod
    def load(cls, store: HierarchyStore) -> "_Hierarchy":
        h = cls(
            municipalities=store.list(NodeType.MUNICIPALITY),
            barangays=store.list(NodeType.BARANGAY),
            zones=store.list(NodeType.ZONE),
            households=store.list(NodeType.HOUSEHOLD),
            residents=store.list(NodeType.RESIDENT),
            accounts=store.list(NodeType.ADMIN),
        )
        h._fold()
        return h

    def _fold(self) -> None:
        for m in self.municipalities:
            self.municipality_tally[m.id] = _Tally()

        for b in self.barangays:
            if b.municipality_id not in self.municipality_tally:
                logger.warning(f"Skipping barangay {b.id}: municipality {b.municipality_id} not in snapshot")
                continue
            self.barangay_tally[b.id] = _Tally()
            self.municipality_of_barangay[b.id] = b.municipality_id
            self.households_by_barangay[b.id] = []

        for z in self.zones:
            if z.barangay_id not in self.barangay_tally:
                logger.warning(f"Skipping zone {z.id}: barangay {z.barangay_id} not in snapshot")
                continue
            self.zone_tally[z.id] = _Tally(zones=1)
            self.barangay_of_zone[z.id] = z.barangay_id
            self.residents_by_zone[z.id] = []

        zone_of_household: dict[int, int] = {}
        for hh in self.households:
            if hh.zone_id not in self.zone_tally:
                logger.warning(f"Skipping household {hh.id}: zone {hh.zone_id} not in snapshot")
                continue
            zone_of_household[hh.id] = hh.zone_id
            self.zone_tally[hh.zone_id].households += 1
            self.residents_by_household[hh.id] = []
            barangay_id = self.barangay_of_zone[hh.zone_id]
            self.households_by_barangay[barangay_id].append(hh)

        for r in self.residents:
            zone_id = zone_of_household.get(r.household_id)
            if zone_id is None:
                logger.warning(f"Skipping resident {r.id}: household {r.household_id} not in snapshot")
                continue
            tally = self.zone_tally[zone_id]
            tally.residents += 1
            tally.active_residents += 1 if r.is_active else 0
            tally.heads += 1 if r.is_head else 0
            self.residents_by_zone[zone_id].append(r)
            self.residents_by_household[r.household_id].append(r)

        # bottom-up roll-up
        for zone_id, tally in self.zone_tally.items():
            self.barangay_tally[self.barangay_of_zone[zone_id]].add(tally)
        for barangay_id, tally in self.barangay_tally.items():
            self.municipality_tally[self.municipality_of_barangay[barangay_id]].add(tally)

    def account_municipality(self, account: Any) -> int | None:
        """The municipality an account is scoped inside, if any."""
        if account.municipality_id is not None:
            return account.municipality_id
        if account.barangay_id is not None:
            return self.municipality_of_barangay.get(account.barangay_id)
        if account.zone_id is not None:
            return self.municipality_of_barangay.get(self.barangay_of_zone.get(account.zone_id))
        return None

    def admins(self) -> list:
        return [a for a in self.accounts if a.role in ADMIN_ROLES]


# =============================================================================
# ENGINE
# =============================================================================


class AggregationEngine:
    """Read-only statistics over a HierarchyStore snapshot."""

    def __init__(self, store: HierarchyStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    # -------------------------------------------------------------------------
    # System-wide
    # -------------------------------------------------------------------------

    def system_statistics(self) -> SystemStatistics:
        with self.store.snapshot():
            return self._system_statistics(_Hierarchy.load(self.store), self.clock())

    def municipality_statistics(
        self, land_areas: dict[int, float] | None = None
    ) -> list[MunicipalityStatistics]:
        """One entry per municipality, ordered by name then id.

        ``land_areas`` (municipality id -> km²) overrides stored land areas.
        """
        with self.store.snapshot():
            h = _Hierarchy.load(self.store)
            return self._municipality_statistics(h, self.clock(), land_areas)

    def system_overview(self, land_areas: dict[int, float] | None = None) -> SystemOverview:
        """System and per-municipality statistics computed from one snapshot."""
        with self.store.snapshot():
            h = _Hierarchy.load(self.store)
            now = self.clock()
            system = self._system_statistics(h, now)
            return SystemOverview(
                system_statistics=system,
                municipality_statistics=self._municipality_statistics(h, now, land_areas),
                active_admins=system.active_admins,
                inactive_admins=system.inactive_admins,
                last_updated=now,
            )

    def _system_statistics(self, h: _Hierarchy, now: datetime) -> SystemStatistics:
        admins = h.admins()
        active = sum(1 for a in admins if is_account_active(a, now))
        by_role = Counter(a.role.value for a in admins)
        total_households = len(h.households)
        total_residents = len(h.residents)

        return SystemStatistics(
            total_municipalities=len(h.municipalities),
            total_barangays=len(h.barangays),
            total_zones=len(h.zones),
            total_households=total_households,
            total_residents=total_residents,
            total_admins=len(admins),
            active_admins=active,
            inactive_admins=len(admins) - active,
            admins_by_role=dict(sorted(by_role.items())),
            average_household_size=average_household_size(total_residents, total_households),
        )

    def _municipality_statistics(
        self,
        h: _Hierarchy,
        now: datetime,
        land_areas: dict[int, float] | None = None,
    ) -> list[MunicipalityStatistics]:
        land_areas = land_areas or {}

        active_admins: Counter = Counter()
        for account in h.admins():
            municipality_id = h.account_municipality(account)
            if municipality_id is not None and is_account_active(account, now):
                active_admins[municipality_id] += 1

        barangays_of: dict[int, list] = {m.id: [] for m in h.municipalities}
        for b in h.barangays:
            if b.id in h.barangay_tally:
                barangays_of[b.municipality_id].append(b)

        results = []
        for m in sorted(h.municipalities, key=lambda m: (m.name, m.id)):
            tally = h.municipality_tally[m.id]
            area = land_areas.get(m.id, m.land_area)
            density = None
            if area is not None and float(area) > 0:
                density = round(tally.residents / float(area), 2)

            results.append(MunicipalityStatistics(
                municipality_id=m.id,
                municipality_name=m.name,
                total_barangays=len(barangays_of[m.id]),
                total_zones=tally.zones,
                total_households=tally.households,
                total_residents=tally.residents,
                average_household_size=average_household_size(tally.residents, tally.households),
                active_admins=active_admins[m.id],
                population_density=density,
                barangay_statistics=[
                    self._barangay_statistics(h, b)
                    for b in sorted(barangays_of[m.id], key=lambda b: (b.name, b.id))
                ],
            ))
        return results

    # -------------------------------------------------------------------------
    # Barangay / zone
    # -------------------------------------------------------------------------

    def barangay_statistics(self, barangay_id: int) -> BarangayStatistics:
        with self.store.snapshot():
            barangay = self.store.get(NodeType.BARANGAY, barangay_id)
            return self._barangay_statistics(_Hierarchy.load(self.store), barangay)

    def _barangay_statistics(self, h: _Hierarchy, barangay: Any) -> BarangayStatistics:
        tally = h.barangay_tally.get(barangay.id, _Tally())
        zones = sorted(
            (z for z in h.zones if h.barangay_of_zone.get(z.id) == barangay.id),
            key=lambda z: (z.name, z.id),
        )
        return BarangayStatistics(
            barangay_id=barangay.id,
            barangay_name=barangay.name,
            total_zones=tally.zones,
            total_households=tally.households,
            total_residents=tally.residents,
            average_household_size=average_household_size(tally.residents, tally.households),
            active_residents=tally.active_residents,
            household_heads=tally.heads,
            zone_statistics=[
                ZoneStatistic(
                    zone_id=z.id,
                    zone_name=z.name,
                    household_count=h.zone_tally[z.id].households,
                    resident_count=h.zone_tally[z.id].residents,
                )
                for z in zones
            ],
        )

    def zone_statistics(self, zone_id: int) -> ZoneStatistics:
        with self.store.snapshot():
            zone = self.store.get(NodeType.ZONE, zone_id)
            barangay = self.store.get(NodeType.BARANGAY, zone.barangay_id)
            return self._zone_statistics(_Hierarchy.load(self.store), zone, barangay)

    def _zone_statistics(self, h: _Hierarchy, zone: Any, barangay: Any) -> ZoneStatistics:
        tally = h.zone_tally.get(zone.id, _Tally())
        genders = Counter(r.gender or "Unknown" for r in h.residents_by_zone.get(zone.id, []))
        return ZoneStatistics(
            zone_id=zone.id,
            zone_name=zone.name,
            barangay_name=barangay.name,
            total_households=tally.households,
            total_residents=tally.residents,
            average_household_size=average_household_size(tally.residents, tally.households),
            active_residents=tally.active_residents,
            household_heads=tally.heads,
            gender_distribution=dict(sorted(genders.items())),
        )

    # -------------------------------------------------------------------------
    # Municipality report
    # -------------------------------------------------------------------------

    def municipality_report(
        self, municipality_id: int, land_areas: dict[int, float] | None = None
    ) -> MunicipalityReport:
        """Full statistical report for one municipality."""
        with self.store.snapshot():
            municipality = self.store.get(NodeType.MUNICIPALITY, municipality_id)
            h = _Hierarchy.load(self.store)
            return self._municipality_report(h, municipality, self.clock(), land_areas)

    def _municipality_report(
        self,
        h: _Hierarchy,
        municipality: Any,
        now: datetime,
        land_areas: dict[int, float] | None,
    ) -> MunicipalityReport:
        stats = next(
            s for s in self._municipality_statistics(h, now, land_areas)
            if s.municipality_id == municipality.id
        )
        barangays = sorted(
            (b for b in h.barangays
             if b.id in h.barangay_tally and b.municipality_id == municipality.id),
            key=lambda b: (b.name, b.id),
        )

        households = [hh for b in barangays for hh in h.households_by_barangay[b.id]]
        sizes = Counter(
            household_size_bucket(len(h.residents_by_household[hh.id])) for hh in households
        )
        household_stats = HouseholdStatistics(
            total_households=len(households),
            average_household_size=stats.average_household_size,
            households_by_barangay=[
                BarangayCount(
                    barangay_id=b.id,
                    barangay_name=b.name,
                    count=len(h.households_by_barangay[b.id]),
                )
                for b in barangays
            ],
            household_distribution={
                bucket: sizes[bucket] for bucket in HOUSEHOLD_SIZE_BUCKETS if sizes[bucket]
            },
        )

        residents = [r for hh in households for r in h.residents_by_household[hh.id]]
        today = now.date()
        ages = [age_on(r.birthdate, today) for r in residents]
        brackets = Counter(age_bracket(a) for a in ages)
        genders = Counter(r.gender or "Unknown" for r in residents)
        resident_stats = ResidentStatistics(
            total_residents=len(residents),
            active_residents=sum(1 for r in residents if r.is_active),
            household_heads=sum(1 for r in residents if r.is_head),
            average_age=round(sum(ages) / len(ages), 2) if ages else 0,
            gender_distribution=dict(sorted(genders.items())),
            age_distribution={
                label: brackets[label] for label, _, _ in AGE_BRACKETS if brackets[label]
            },
            residents_by_barangay=[
                BarangayCount(
                    barangay_id=b.id,
                    barangay_name=b.name,
                    count=h.barangay_tally[b.id].residents,
                )
                for b in barangays
            ],
        )

        return MunicipalityReport(
            generated_at=now,
            municipality_statistics=stats,
            household_statistics=household_stats,
            resident_statistics=resident_stats,
            summary=(
                f"Comprehensive report for {municipality.name} "
                f"generated on {now:%Y-%m-%d}"
            ),
        )
