"""Shared fixtures for deal board tests.

Provides:
- A deterministic clock for optimistic timestamps
- Board scopes for a team and a solo user

Nothing here touches Postgres or Redis; API tests run against an
in-memory repository and feed tests against a mocked Redis client.
"""

from __future__ import annotations

import pytest

from src.dealboard.core.tenant import BoardScope
from tests.factories import FixedClock


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def team_scope() -> BoardScope:
    return BoardScope(team_id="team-1")


@pytest.fixture
def user_scope() -> BoardScope:
    return BoardScope(user_id="user-1")
