#!/usr/bin/env python3
"""Create the rental escrow tables on an empty database."""

from __future__ import annotations

import argparse
import os
import sys

from sqlalchemy import create_engine, inspect

from rental_escrow.db.base import Base
from rental_escrow.models import rental_models  # noqa: F401  registers the mappers


def main() -> int:
    parser = argparse.ArgumentParser(description="Create rental escrow tables")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_ESCROW_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_ESCROW_DB_URL env var.",
    )
    parser.add_argument("--echo", action="store_true", help="Print emitted DDL.")
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_ESCROW_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, future=True, echo=args.echo)
    before = set(inspect(engine).get_table_names())
    Base.metadata.create_all(engine)
    after = set(inspect(engine).get_table_names())

    created = sorted(after - before)
    if created:
        print(f"Created tables: {', '.join(created)}")
    else:
        print("All tables already present.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
