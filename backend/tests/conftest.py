"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database built from the production
schema in db/database.py (including the seeded category palette), so tests
exercise the same tables and constraints the service runs against.
"""
import pytest
import aiosqlite
from fastapi import FastAPI

from db.database import SCHEMA, get_db


@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.executescript(SCHEMA)
        yield conn


@pytest.fixture
def mount(db):
    """Factory: throwaway app with one router and get_db pointed at the test db."""
    def _mount(router, prefix: str) -> FastAPI:
        test_app = FastAPI()
        test_app.include_router(router, prefix=prefix)

        async def override_get_db():
            yield db
        test_app.dependency_overrides[get_db] = override_get_db
        return test_app
    return _mount
