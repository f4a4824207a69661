from __future__ import annotations

import argparse
from datetime import date
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "backend"))

from clinic_claims.db.models import Patient  # noqa: E402
from clinic_claims.db.session import SessionLocal  # noqa: E402

DEMO_RECORDS = [
    {
        "mrn": "DEMO-0001",
        "full_name": "Jane Dela Cruz",
        "date_of_birth": date(1990, 5, 1),
        "phone": "0917 123 4567",
        "email": "jane.delacruz@example.com",
        "last_visit": date(2026, 3, 14),
    },
    {
        "mrn": "DEMO-0002",
        "full_name": "Juan Santos",
        "date_of_birth": date(1985, 11, 20),
        "phone": "0918-555-0101",
        "last_visit": date(2026, 8, 2),
    },
    # Same identity attributes as DEMO-0002: exercises the candidate selection step.
    {
        "mrn": "DEMO-0003",
        "full_name": "juan  santos",
        "date_of_birth": date(1985, 11, 20),
        "phone": "09185550101",
        "last_visit": date(2025, 1, 9),
    },
]


def seed_demo() -> dict:
    db = SessionLocal()
    try:
        seeded = {}
        for record in DEMO_RECORDS:
            patient = db.query(Patient).filter(Patient.mrn == record["mrn"]).first()
            if not patient:
                patient = Patient(**record)
                db.add(patient)
            db.commit()
            db.refresh(patient)
            seeded[record["mrn"]] = str(patient.id)
        return seeded
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo patient records for the claiming flow")
    parser.parse_args()

    seeded = seed_demo()
    print("Seeded demo patient records:")
    for key, value in seeded.items():
        print(f"- {key}: {value}")


if __name__ == "__main__":
    main()
