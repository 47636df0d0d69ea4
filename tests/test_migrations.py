"""
Tests for the shiprocket_tracking table migration.
"""
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from shiprocket_fulfillment.migrations.shiprocket_tracking_table import (
    LATE_COLUMNS,
    migrate_shiprocket_tracking_table,
)


@pytest.fixture
def engine():
    conn = MagicMock()
    conn.execute = AsyncMock()

    @asynccontextmanager
    async def begin():
        yield conn

    engine = MagicMock()
    engine.begin = begin
    engine.conn = conn
    return engine


def executed_sql(engine) -> list:
    return [str(call.args[0]) for call in engine.conn.execute.await_args_list]


class TestTrackingTableMigration:
    """Test the idempotent DDL."""

    @pytest.mark.asyncio
    async def test_creates_table_and_indexes(self, engine):
        await migrate_shiprocket_tracking_table(engine)

        statements = executed_sql(engine)
        assert "CREATE TABLE IF NOT EXISTS shiprocket_tracking" in statements[0]
        assert '"current_timestamp" TIMESTAMP WITH TIME ZONE' in statements[0]
        assert any("CREATE UNIQUE INDEX IF NOT EXISTS ix_shiprocket_tracking_awb" in s for s in statements)
        assert all("IF NOT EXISTS" in s for s in statements)

    @pytest.mark.asyncio
    async def test_adds_late_columns(self, engine):
        await migrate_shiprocket_tracking_table(engine)

        statements = executed_sql(engine)
        for column in LATE_COLUMNS:
            assert any(f"ADD COLUMN IF NOT EXISTS {column}" in s for s in statements)
