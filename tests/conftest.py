"""
Shared test configuration and fixtures.

Local providers run against real in-memory SQLite and DuckDB databases.
Remote providers are exercised through fakes: an aiohttp test server for
the query proxy and mock clients for Supabase.
"""

import logging

import pytest

from helpdesk_storage.config import ProviderConfig
from helpdesk_storage.providers.sqlite import SQLiteProvider

logger = logging.getLogger(__name__)

HELPDESK_SCHEMA = """
CREATE TABLE organizations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE profiles (
    id TEXT PRIMARY KEY,
    email TEXT,
    organization_id TEXT
);

CREATE TABLE tickets (
    id INTEGER PRIMARY KEY,
    title TEXT NOT NULL,
    status TEXT DEFAULT 'open',
    priority INTEGER DEFAULT 0,
    organization_id TEXT,
    tags JSON,
    updated_at TEXT
);

CREATE TABLE ticket_messages (
    id INTEGER PRIMARY KEY,
    ticket_id INTEGER,
    sender_id TEXT,
    body TEXT
);
"""


def make_tickets(count: int, start: int = 1, organization_id: str = "org-1") -> list[dict]:
    """Ticket rows with ascending ids and update timestamps."""
    return [
        {
            "id": i,
            "title": f"Ticket {i}",
            "status": "open" if i % 2 else "closed",
            "priority": i % 3,
            "organization_id": organization_id,
            "tags": ["billing"] if i % 2 else ["bug", "urgent"],
            "updated_at": f"2024-01-01T00:00:{i:02d}",
        }
        for i in range(start, start + count)
    ]


async def create_sqlite(security_policy=None, schema: str = HELPDESK_SCHEMA) -> SQLiteProvider:
    provider = SQLiteProvider(
        ProviderConfig(type="sqlite", connection={"path": ":memory:"}), security_policy
    )
    await provider.initialize()
    await provider.execute_script(schema)
    return provider


@pytest.fixture
async def sqlite_provider():
    """Initialized in-memory SQLite provider with the helpdesk tables, no row security."""
    provider = await create_sqlite()
    yield provider
    await provider.close()


@pytest.fixture
async def seeded_provider(sqlite_provider):
    """SQLite provider with five tickets in org-1."""
    result = await sqlite_provider.from_("tickets").insert(make_tickets(5)).execute()
    assert result.error is None
    return sqlite_provider
