"""Apply the SQL files under migrations/ in name order.

Usage: python backend/scripts/apply_migrations.py [migration_filename ...]
"""

import asyncio
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = REPO_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from delguur.infra.postgres import close_pool, get_pool

MIGRATIONS_DIR = REPO_ROOT / "migrations"


async def apply_migrations(names: list[str]) -> None:
    paths = [MIGRATIONS_DIR / name for name in names] if names else sorted(MIGRATIONS_DIR.glob("*.sql"))
    missing = [path for path in paths if not path.exists()]
    if missing:
        print(f"Migration file not found: {missing[0]}")
        sys.exit(1)

    pool = await get_pool()
    try:
        for path in paths:
            print(f"Applying migration: {path.name}")
            sql = path.read_text(encoding="utf-8")
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(sql)
    finally:
        await close_pool()
    print("Migrations applied successfully.")


if __name__ == "__main__":
    asyncio.run(apply_migrations(sys.argv[1:]))
