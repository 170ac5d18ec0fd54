"""Tests for the engine configuration and session dependency."""

from sqlalchemy.ext.asyncio import AsyncSession

from referral_desk.infra import database


class TestEngine:
    def test_default_url_is_local_sqlite(self):
        assert database._is_sqlite is True
        assert database.engine.dialect.name == "sqlite"
        assert database.engine.url.drivername == "sqlite+aiosqlite"


class TestGetDb:
    async def test_yields_one_session_per_request(self):
        first_gen = database.get_db()
        second_gen = database.get_db()

        first = await first_gen.__anext__()
        second = await second_gen.__anext__()

        assert isinstance(first, AsyncSession)
        assert first is not second

        await first_gen.aclose()
        await second_gen.aclose()
