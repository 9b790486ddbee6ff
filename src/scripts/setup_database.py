"""Database Setup Script.

Creates the ``users`` and ``update_log`` tables on the configured
database. Schema evolution is not handled here; the script is meant for
fresh databases and local development.

Usage:
    python -m src.scripts.setup_database [DATABASE_URL]
"""

import asyncio
import sys

from src.config.settings import get_settings
from src.services.persistence import PersistenceGateway


async def setup(database_url: str) -> bool:
    gateway = PersistenceGateway.from_url(database_url)
    print(f"[INFO] Applying schema ({gateway.engine.dialect.name})...")
    try:
        await gateway.create_schema()
    except Exception as e:
        print(f"[ERROR] Failed to apply schema: {e}")
        return False
    finally:
        await gateway.close()

    print("[SUCCESS] Schema applied successfully!")
    return True


def main() -> None:
    database_url = sys.argv[1] if len(sys.argv) > 1 else get_settings().database_url
    ok = asyncio.run(setup(database_url))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
