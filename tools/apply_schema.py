import asyncio
import glob
import os
import sys

# Add project root to path
sys.path.insert(0, os.getcwd())

from pnl_indexer.core.db import get_db_connection, init_db, close_db

SCHEMA_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "schema")


async def apply_schema():
    files = sorted(glob.glob(os.path.join(SCHEMA_DIR, "*.sql")))
    print(f"🚀 Applying {len(files)} schema files...")
    await init_db()

    try:
        async with get_db_connection() as conn:
            async with conn.cursor() as cur:
                for path in files:
                    with open(path, "r") as f:
                        sql = f.read()
                    await cur.execute(sql)
                    print(f"✅ Applied {os.path.basename(path)}")
            await conn.commit()
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(apply_schema())
