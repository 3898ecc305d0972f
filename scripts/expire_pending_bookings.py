#!/usr/bin/env python3
"""
Cancel pending bookings whose payment window has run out.

Meant to be run periodically (cron or a scheduler). A booking is only
expired when none of its payments has settled.
"""
import argparse
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app import create_app
from app.reconciliation import expire_stale_bookings


def expire_pending(now: datetime | None = None) -> list[int]:
    app = create_app()
    with app.app_context():
        grace = app.config["PENDING_BOOKING_GRACE_MINUTES"]
        print(f"🔄 Expiring pending bookings older than {grace} minutes...")
        expired = expire_stale_bookings(now)
        if expired:
            print(f"✅ Cancelled {len(expired)} booking(s): {', '.join(str(i) for i in expired)}")
        else:
            print("✅ Nothing to expire")
        return expired


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cancel stale pending bookings")
    parser.add_argument("--now", help="reference time in ISO 8601 (UTC), defaults to the current time")
    args = parser.parse_args()
    expire_pending(datetime.fromisoformat(args.now) if args.now else None)
