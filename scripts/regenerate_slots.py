#!/usr/bin/env python3
"""
Regenerate time slots for every active availability pattern.

Run daily so the bookable horizon keeps rolling forward. Booked and
blocked slots are left alone.
"""
import argparse
import sys
from datetime import date
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app import create_app
from app.availability import regenerate_slots
from app.extensions import db
from app.models import AvailabilityPattern


def regenerate_all(salon_id: int | None = None, date_from: date | None = None, date_to: date | None = None) -> int:
    app = create_app()
    with app.app_context():
        query = AvailabilityPattern.query.filter_by(is_active=True)
        if salon_id is not None:
            query = query.filter_by(salon_id=salon_id)
        patterns = query.all()
        if not patterns:
            print("❌ No active availability patterns found.")
            return 0

        total = 0
        for pattern in patterns:
            created = regenerate_slots(pattern, date_from, date_to)
            total += len(created)
            print(f"  pattern {pattern.pattern_id} (salon {pattern.salon_id}): {len(created)} slot(s)")
        db.session.commit()
        print(f"✅ Created {total} slot(s) across {len(patterns)} pattern(s)")
        return total


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Regenerate availability slots")
    parser.add_argument("--salon-id", type=int, help="only regenerate this salon's patterns")
    parser.add_argument("--from", dest="date_from", type=date.fromisoformat, help="first date (YYYY-MM-DD)")
    parser.add_argument("--to", dest="date_to", type=date.fromisoformat, help="last date (YYYY-MM-DD)")
    args = parser.parse_args()
    regenerate_all(args.salon_id, args.date_from, args.date_to)
