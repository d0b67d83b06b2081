#!/usr/bin/env python3
"""Complete bookings whose post-return claim window has run out.

Meant to be run from cron or a scheduler every few minutes. Reads also
settle expired windows lazily, so a missed run only delays payouts.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Settle expired claim windows.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_ESCROW_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_ESCROW_DB_URL env var.",
    )
    parser.add_argument("--verbose", action="store_true")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_ESCROW_DB_URL or pass --db-url.")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Settings are read at import time.
    os.environ["RENTAL_ESCROW_DB_URL"] = args.db_url

    from rental_escrow.db.session import SessionLocalRental
    from rental_escrow.services.payment_gateway import get_payment_gateway
    from rental_escrow.services.rental_service import sweep_expired_claim_windows

    db = SessionLocalRental()
    try:
        summary = sweep_expired_claim_windows(db, get_payment_gateway())
    finally:
        db.close()

    print(json.dumps(summary))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
