"""Seed the database with a handful of demo technicians around Paris."""

import asyncio

from fieldops.db.engine import init_db, async_session_factory
from fieldops.db import crud

DEMO_TECHNICIANS = [
    ("Alice Martin", "alice@example.com", ["locksmith", "serrurerie"], 48.8566, 2.3522, 4.8),
    ("Bruno Petit", "bruno@example.com", ["plumbing", "heating"], 48.8738, 2.2950, 4.2),
    ("Chloe Durand", "chloe@example.com", ["electricity"], 48.8422, 2.3210, None),
    ("David Moreau", "david@example.com", ["glazing", "locksmith"], 48.8910, 2.3800, 3.9),
]


async def seed():
    await init_db()

    async with async_session_factory() as db:
        existing = {t.email for t in await crud.list_technicians(db, active_only=False)}
        for name, email, skills, lat, lon, rating in DEMO_TECHNICIANS:
            if email in existing:
                print(f"{email} already exists, skipping.")
                continue
            tech = await crud.create_technician(
                db, name=name, email=email, skills=skills,
                latitude=lat, longitude=lon, average_rating=rating,
            )
            print(f"Created technician: {tech.name} (id: {tech.id}, skills: {', '.join(skills)})")

    print("\nSeed complete. Start the server with: uvicorn fieldops.main:app --reload")


if __name__ == "__main__":
    asyncio.run(seed())
