import argparse
import asyncio
import os

from evently.infra.sql import create_schema, make_async_engine
from evently.model.categories import create_category

DEFAULT_CATEGORIES = [
    "Conference",
    "Meetup",
    "Workshop",
    "Concert",
    "Sports",
]


async def seed_categories(SessionAsync, names):
    async with SessionAsync() as db:
        for name in names:
            category = await create_category(db, name)
            print(f"   - {category['name']} ({category['id']})")
    print(f'✅ {len(names)} categories seeded')


async def main(database_url: str, names):
    engine, SessionAsync, _ = make_async_engine(database_url)
    try:
        await create_schema(engine)
        print("✅ schema created")
        if names:
            await seed_categories(SessionAsync, names)
    finally:
        await engine.dispose()


if __name__ == '__main__':
    ap = argparse.ArgumentParser(description="Create the Evently schema")
    ap.add_argument("--database-url",
                    default=os.getenv("DATABASE_URL", "sqlite:///./evently.db"))
    ap.add_argument("--category", action="append", dest="categories",
                    help="category to seed (repeatable); "
                         "defaults to a small built-in list")
    ap.add_argument("--no-categories", action="store_true",
                    help="only create the schema")
    args = ap.parse_args()

    names = [] if args.no_categories else (
        args.categories or DEFAULT_CATEGORIES
    )
    asyncio.run(main(args.database_url, names))
