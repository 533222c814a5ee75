"""
Tests for engine option selection.
"""
import pytest

from order_reconciliation.config import Settings
from order_reconciliation.database.connection import engine_options


@pytest.mark.unit
class TestEngineOptions:
    def test_sqlite_gets_no_pool_sizing(self, test_settings: Settings) -> None:
        options = engine_options(test_settings)

        assert "pool_size" not in options
        assert options["connect_args"] == {"timeout": 30}

    def test_postgres_uses_pool_settings(self) -> None:
        settings = Settings(
            database_url="postgresql+asyncpg://orders:secret@db/orders",
            database_pool_size=5,
            database_max_overflow=10,
        )

        options = engine_options(settings)

        assert options["pool_size"] == 5
        assert options["max_overflow"] == 10
        assert options["pool_pre_ping"] is True
        assert "connect_args" not in options
