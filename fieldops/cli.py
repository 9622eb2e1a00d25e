"""CLI for FieldOps: bootstrap the database, run a timeout sweep, register technicians."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys


async def cmd_init_db(args):
    from fieldops.db.engine import init_db

    await init_db()
    print("Database initialised")


async def cmd_scan_timeouts(args):
    """Run one timeout sweep and print the report."""
    from fieldops.db.engine import async_session_factory, init_db
    from fieldops.services.timeout_scanner import TimeoutScanner

    await init_db()
    report = await TimeoutScanner(async_session_factory).run()
    print(json.dumps(report.to_dict(), indent=2))


async def cmd_add_technician(args):
    from fieldops.db import crud
    from fieldops.db.engine import async_session_factory, init_db

    if (args.lat is None) != (args.lon is None):
        print("--lat and --lon must be given together")
        sys.exit(1)

    await init_db()
    skills = [s.strip() for s in args.skills.split(",") if s.strip()]
    async with async_session_factory() as db:
        tech = await crud.create_technician(
            db, name=args.name, email=args.email, phone=args.phone,
            skills=skills, latitude=args.lat, longitude=args.lon,
        )
    print(f"Technician created: {tech.name} (id={tech.id})")


def main():
    parser = argparse.ArgumentParser(description="FieldOps CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("scan-timeouts", help="Expire elapsed offers and re-dispatch once")

    at = subparsers.add_parser("add-technician", help="Register a technician")
    at.add_argument("--name", required=True, help="Technician name")
    at.add_argument("--email", required=True, help="Technician email")
    at.add_argument("--phone", default="", help="Phone number")
    at.add_argument("--skills", default="", help="Comma-separated skills, e.g. plumbing,heating")
    at.add_argument("--lat", type=float, default=None, help="Latitude")
    at.add_argument("--lon", type=float, default=None, help="Longitude")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "init-db":
        asyncio.run(cmd_init_db(args))
    elif args.command == "scan-timeouts":
        asyncio.run(cmd_scan_timeouts(args))
    elif args.command == "add-technician":
        asyncio.run(cmd_add_technician(args))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
