"""
Create the worker's tables and seed metric definitions for local development
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from core.logging import setup_logging
# Import all models to ensure they are registered
from models import Base, MetricDefinition
from ingestion.transformers.mapping import KIND_MAPPINGS

setup_logging()
logger = logging.getLogger(__name__)


def default_definitions():
    """One definition per metric code the worker emits"""
    definitions = []
    for kind, mapping in KIND_MAPPINGS.items():
        definitions.append(MetricDefinition(
            metric_code=mapping.metric_code,
            display_name=mapping.metric_code.replace("_", " ").title(),
            canonical_unit=mapping.unit,
            description=f"Imported from {kind}",
        ))
    return definitions


async def init_database():
    logger.info("Connecting to database...")
    engine = create_async_engine(settings.DATABASE_URL)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with SessionLocal() as session:
        existing = set((await session.execute(select(MetricDefinition.metric_code))).scalars().all())
        missing = [d for d in default_definitions() if d.metric_code not in existing]
        session.add_all(missing)
        await session.commit()
        logger.info(f"Seeded {len(missing)} metric definitions ({len(existing)} already present)")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_database())
