"""Seed the reference hierarchy: Ajuy, Iloilo → Adcadarao → Zone 1 / Zone 2.

Usage:
    python scripts/seed_iloilo.py            # seed (skips rows that exist)
    python scripts/seed_iloilo.py --stats    # print system statistics only
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.orm import Session

from atlas.aggregation import AggregationEngine
from atlas.database import engine, init_db
from atlas.integrity import IntegrityGuard
from atlas.models import Barangay, Municipality, Zone
from atlas.schemas import BarangayCreate, MunicipalityCreate, NodeType, ZoneCreate
from atlas.store import SqlAlchemyStore

MUNICIPALITY = {
    "code": "AJY",
    "name": "Ajuy",
    "province": "Iloilo",
    "region": "Region VI (Western Visayas)",
}
BARANGAY = {"code": "ADC", "name": "Adcadarao"}
ZONES = [
    {"name": "Zone 1", "description": "Central zone of Adcadarao"},
    {"name": "Zone 2", "description": "Northern zone of Adcadarao"},
]


def seed(session: Session) -> dict:
    """Create the reference rows through the IntegrityGuard.

    Returns ids of the municipality, barangay and zones, plus how many rows
    were created on this run.
    """
    guard = IntegrityGuard(SqlAlchemyStore(session))
    created = 0

    municipality = session.execute(
        select(Municipality).where(Municipality.code == MUNICIPALITY["code"])
    ).scalar_one_or_none()
    if municipality is None:
        municipality = guard.create(NodeType.MUNICIPALITY, MunicipalityCreate(**MUNICIPALITY))
        created += 1

    barangay = session.execute(
        select(Barangay).where(
            Barangay.code == BARANGAY["code"],
            Barangay.municipality_id == municipality.id,
        )
    ).scalar_one_or_none()
    if barangay is None:
        barangay = guard.create(
            NodeType.BARANGAY, BarangayCreate(**BARANGAY, municipality_id=municipality.id)
        )
        created += 1

    zone_ids = []
    for zone_fields in ZONES:
        zone = session.execute(
            select(Zone).where(Zone.name == zone_fields["name"], Zone.barangay_id == barangay.id)
        ).scalar_one_or_none()
        if zone is None:
            zone = guard.create(NodeType.ZONE, ZoneCreate(**zone_fields, barangay_id=barangay.id))
            created += 1
        zone_ids.append(zone.id)

    return {
        "municipality_id": municipality.id,
        "barangay_id": barangay.id,
        "zone_ids": zone_ids,
        "created": created,
    }


def print_stats(session: Session) -> None:
    stats = AggregationEngine(SqlAlchemyStore(session)).system_statistics()

    print("\n--- System Statistics ---")
    print(f"Municipalities:  {stats.total_municipalities:,}")
    print(f"Barangays:       {stats.total_barangays:,}")
    print(f"Zones:           {stats.total_zones:,}")
    print(f"Households:      {stats.total_households:,}")
    print(f"Residents:       {stats.total_residents:,}")
    print(f"Avg household:   {stats.average_household_size}")
    print(f"Admins:          {stats.total_admins:,} ({stats.active_admins:,} active)")


def main():
    parser = argparse.ArgumentParser(description="Seed the Ajuy, Iloilo reference hierarchy")
    parser.add_argument("--stats", action="store_true", help="Show statistics only")
    args = parser.parse_args()

    init_db()

    with Session(engine) as session:
        if args.stats:
            print_stats(session)
            return

        result = seed(session)
        print(f"Municipality {result['municipality_id']}, barangay {result['barangay_id']}, "
              f"zones {result['zone_ids']} ({result['created']} rows created)")
        print_stats(session)


if __name__ == "__main__":
    main()
