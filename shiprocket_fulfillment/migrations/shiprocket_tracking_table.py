"""
Database Migration Script for Shiprocket tracking

Creates the shiprocket_tracking table, one row per AWB, and its indexes.
Deployments created before order linking get the host_* columns added.

Runs from the app lifespan when AUTO_MIGRATE is set, or standalone.
"""
import asyncio
import logging
from sqlalchemy import text

logger = logging.getLogger(__name__)

# Columns added after the first release of the table
LATE_COLUMNS = {
    "host_order_id": "VARCHAR(100)",
    "host_fulfillment_id": "VARCHAR(100)",
    "channel_id": "BIGINT",
}


async def migrate_shiprocket_tracking_table(engine):
    """
    Create the tracking table if it doesn't exist.

    This is an idempotent migration - safe to run multiple times.
    """
    logger.info("Starting shiprocket_tracking migration...")

    async with engine.begin() as conn:
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS shiprocket_tracking (
                id SERIAL PRIMARY KEY,
                awb VARCHAR(64) NOT NULL,
                order_id VARCHAR(100),
                sr_order_id BIGINT,
                channel_id BIGINT,
                host_order_id VARCHAR(100),
                host_fulfillment_id VARCHAR(100),
                courier_name VARCHAR(100),
                current_status VARCHAR(100) NOT NULL DEFAULT 'Unknown',
                current_status_id INTEGER,
                shipment_status VARCHAR(100),
                shipment_status_id INTEGER,
                "current_timestamp" TIMESTAMP WITH TIME ZONE,
                etd TIMESTAMP WITH TIME ZONE,
                awb_assigned_date TIMESTAMP WITH TIME ZONE,
                pickup_scheduled_date TIMESTAMP WITH TIME ZONE,
                scans JSON,
                pod_status VARCHAR(100),
                pod TEXT,
                is_return BOOLEAN,
                origin VARCHAR(255),
                destination VARCHAR(255),
                weight VARCHAR(50),
                raw_payload JSON,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
            )
        """))
        logger.info("Created/verified shiprocket_tracking table")

        for column, ddl_type in LATE_COLUMNS.items():
            await conn.execute(text(
                f"ALTER TABLE shiprocket_tracking ADD COLUMN IF NOT EXISTS {column} {ddl_type}"
            ))

        for index_sql in [
            "CREATE UNIQUE INDEX IF NOT EXISTS ix_shiprocket_tracking_awb ON shiprocket_tracking(awb)",
            "CREATE INDEX IF NOT EXISTS ix_shiprocket_tracking_host_order_id ON shiprocket_tracking(host_order_id)",
            "CREATE INDEX IF NOT EXISTS ix_shiprocket_tracking_id ON shiprocket_tracking(id)",
        ]:
            await conn.execute(text(index_sql))

    logger.info("shiprocket_tracking migration complete!")


async def run_migration():
    """Run the migration using the app's database engine."""
    from shiprocket_fulfillment.core.database import dispose_engine, get_engine

    try:
        await migrate_shiprocket_tracking_table(get_engine())
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(run_migration())
