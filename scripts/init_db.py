"""
Create database tables directly from the models.

For local development and SQLite; production databases are migrated with
``alembic upgrade head``.

Usage:
    python -m scripts.init_db
"""
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backoffice.database import create_engine, init_db


async def init():
    """Create all tables."""
    print("Creating database tables...")
    engine = create_engine()
    try:
        await init_db(engine)
    finally:
        await engine.dispose()
    print("Database tables created successfully!")


if __name__ == "__main__":
    asyncio.run(init())
