"""
Tests for engine pool options and engine lifecycle.
"""
from types import SimpleNamespace

import pytest

from shiprocket_fulfillment.core import database


def make_config(environment):
    return SimpleNamespace(
        ENVIRONMENT=environment,
        DB_POOL_SIZE=20,
        DB_MAX_OVERFLOW=10,
        DB_POOL_RECYCLE=1800,
    )


class TestEngineOptions:

    def test_production_pool_from_settings(self):
        options = database.engine_options(make_config("production"))

        assert options["pool_size"] == 20
        assert options["max_overflow"] == 10
        assert options["pool_recycle"] == 1800
        assert options["pool_pre_ping"] is True

    def test_development_pool_is_small(self):
        options = database.engine_options(make_config("development"))

        assert options == {"pool_size": 2, "max_overflow": 5, "pool_pre_ping": True}


class TestDisposeEngine:

    @pytest.mark.asyncio
    async def test_noop_without_engine(self, monkeypatch):
        monkeypatch.setattr(database, "_engine", None)
        monkeypatch.setattr(database, "_session_factory", None)

        await database.dispose_engine()

        assert database._engine is None
        assert database._session_factory is None
