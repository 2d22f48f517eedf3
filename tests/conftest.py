"""Shared fixtures for pipeline tests."""

from __future__ import annotations

import aiosqlite
import pytest_asyncio

from gantry.pipeline.store import RunStateStore


@pytest_asyncio.fixture
async def db(tmp_path):
    db_path = tmp_path / "test_gantry.db"
    async with aiosqlite.connect(str(db_path)) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest_asyncio.fixture
async def store(db):
    s = RunStateStore(db)
    await s.initialize()
    return s
