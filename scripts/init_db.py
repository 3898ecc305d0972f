#!/usr/bin/env python3
"""Create the booking engine tables, optionally dropping them first."""
import argparse
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app import create_app
from app.extensions import db


def init_database(drop: bool = False) -> None:
    app = create_app()
    with app.app_context():
        if drop:
            db.drop_all()
            print("🗑️  Dropped existing tables")
        db.create_all()
        tables = sorted(db.metadata.tables)
        print(f"✅ Initialized {len(tables)} tables: {', '.join(tables)}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--drop", action="store_true", help="drop all tables before creating them")
    args = parser.parse_args()
    init_database(drop=args.drop)
