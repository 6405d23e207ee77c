"""Integration tests for the deal board API endpoints.

Uses InMemoryDealRepository test double and httpx AsyncClient against the
real application (scope, logging and metrics middleware included). The
change feed is a DealChangeFeed over a mocked Redis client. ASGITransport
does not run the lifespan, so nothing connects to Postgres or Redis.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from src.dealboard.core.tenant import BoardScope
from src.dealboard.deals.feed import DealChangeFeed
from src.dealboard.deals.repository import DealNotFoundError
from src.dealboard.deals.schemas import DealCreate, DealRow
from src.dealboard.deals.stages import Stage, classify_stage, db_stage
from src.dealboard.main import create_app

TEAM = {"X-Team-ID": "team-1", "X-User-ID": "user-1"}
OTHER_TEAM = {"X-Team-ID": "team-2"}


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryDealRepository:
    """In-memory DealRepository for testing without database."""

    def __init__(self) -> None:
        self._rows: dict[str, DealRow] = {}

    @staticmethod
    def _visible(row: DealRow, scope: BoardScope) -> bool:
        if scope.team_id:
            return row.team_id == scope.team_id
        return row.user_id == scope.user_id

    def _load(self, scope: BoardScope, deal_id: str) -> DealRow:
        row = self._rows.get(deal_id)
        if row is None or not self._visible(row, scope):
            raise DealNotFoundError(deal_id)
        return row

    def seed(self, **fields) -> DealRow:
        now = datetime.now(timezone.utc) - timedelta(days=1)
        defaults = {
            "id": str(uuid.uuid4()),
            "title": "Seeded",
            "value": 100.0,
            "currency": "TRY",
            "stage": "lead",
            "team_id": "team-1",
            "user_id": "user-1",
            "created_at": now,
            "updated_at": now,
        }
        defaults.update(fields)
        row = DealRow(**defaults)
        self._rows[row.id] = row
        return row

    async def list_deals(self, scope: BoardScope) -> list[DealRow]:
        return [row for row in self._rows.values() if self._visible(row, scope)]

    async def get_deal(self, scope: BoardScope, deal_id: str) -> DealRow | None:
        try:
            return self._load(scope, deal_id)
        except DealNotFoundError:
            return None

    async def create_deal(self, scope: BoardScope, data: DealCreate) -> DealRow:
        return self.seed(
            title=data.title,
            value=data.value,
            currency=data.currency,
            stage=db_stage(data.stage),
            contact_name=data.contact_name,
            company=data.company,
            team_id=scope.team_id,
            user_id=data.owner_id or scope.user_id,
            created_at=datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
        )

    async def update_stage(self, scope: BoardScope, deal_id: str, stage: Stage):
        row = self._load(scope, deal_id)
        if classify_stage(row.stage) == stage:
            return row, False
        row = row.model_copy(
            update={"stage": db_stage(stage), "updated_at": datetime.now(timezone.utc)}
        )
        self._rows[deal_id] = row
        return row, True

    async def assign_owner(self, scope: BoardScope, deal_id: str, owner_id: str):
        row = self._load(scope, deal_id)
        if row.user_id == owner_id:
            return row, False
        row = row.model_copy(
            update={"user_id": owner_id, "updated_at": datetime.now(timezone.utc)}
        )
        self._rows[deal_id] = row
        return row, True

    async def delete_deal(self, scope: BoardScope, deal_id: str) -> DealRow:
        row = self._load(scope, deal_id)
        del self._rows[deal_id]
        return row


@pytest_asyncio.fixture
async def api():
    """Client, repository and mocked Redis behind the change feed."""
    app = create_app()
    repo = InMemoryDealRepository()
    redis = AsyncMock()
    redis.xadd = AsyncMock(return_value="1-0")

    app.state.deal_repository = repo
    app.state.change_feed = DealChangeFeed(redis)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, repo, redis


# ── Stage Endpoint ───────────────────────────────────────────────────────────


class TestStageEndpoint:
    """POST /api/deals/stage."""

    @pytest.mark.asyncio
    async def test_change_stage(self, api):
        client, repo, redis = api
        row = repo.seed(stage="Aday")

        response = await client.post(
            "/api/deals/stage", json={"dealId": row.id, "stage": "proposal"}, headers=TEAM
        )

        assert response.status_code == 200
        deal = response.json()["deal"]
        assert deal["id"] == row.id
        assert deal["stage"] == "proposal"
        assert datetime.fromisoformat(deal["updated_at"]) > row.updated_at

    @pytest.mark.asyncio
    async def test_change_publishes_to_team_and_owner(self, api):
        client, repo, redis = api
        row = repo.seed()

        await client.post("/api/deals/stage", json={"dealId": row.id, "stage": "won"}, headers=TEAM)

        keys = [call.args[0] for call in redis.xadd.call_args_list]
        assert keys == ["t:team:team-1:deals:changes", "t:user:user-1:deals:changes"]
        assert redis.xadd.call_args_list[0].args[1]["event_type"] == "UPDATE"

    @pytest.mark.asyncio
    async def test_same_stage_is_idempotent(self, api):
        """Repeating a move (e.g. a retried request) writes and publishes nothing."""
        client, repo, redis = api
        row = repo.seed(stage="closed_won")

        response = await client.post(
            "/api/deals/stage", json={"dealId": row.id, "stage": "won"}, headers=TEAM
        )

        assert response.status_code == 200
        assert response.json()["deal"]["stage"] == "closed_won"
        redis.xadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_stage(self, api):
        client, repo, _ = api
        row = repo.seed()

        response = await client.post(
            "/api/deals/stage", json={"dealId": row.id, "stage": "archived"}, headers=TEAM
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid stage: archived"}

    @pytest.mark.asyncio
    async def test_unknown_deal(self, api):
        client, _, _ = api

        response = await client.post(
            "/api/deals/stage", json={"dealId": "missing", "stage": "won"}, headers=TEAM
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Deal not found: missing"}

    @pytest.mark.asyncio
    async def test_other_team_cannot_move_deal(self, api):
        client, repo, _ = api
        row = repo.seed()

        response = await client.post(
            "/api/deals/stage", json={"dealId": row.id, "stage": "won"}, headers=OTHER_TEAM
        )

        assert response.status_code == 404
        assert classify_stage(repo._rows[row.id].stage) == Stage.LEAD

    @pytest.mark.asyncio
    async def test_missing_field_renders_error(self, api):
        client, _, _ = api

        response = await client.post("/api/deals/stage", json={"stage": "won"}, headers=TEAM)

        assert response.status_code == 400
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_feed_failure_does_not_fail_request(self, api):
        client, repo, redis = api
        redis.xadd = AsyncMock(side_effect=RedisConnectionError("down"))
        row = repo.seed()

        response = await client.post(
            "/api/deals/stage", json={"dealId": row.id, "stage": "lost"}, headers=TEAM
        )

        assert response.status_code == 200
        assert response.json()["deal"]["stage"] == "lost"


# ── Other Deal Endpoints ─────────────────────────────────────────────────────


class TestDealEndpoints:
    @pytest.mark.asyncio
    async def test_assign_owner(self, api):
        client, repo, redis = api
        row = repo.seed()

        response = await client.post(
            "/api/deals/assign", json={"dealId": row.id, "ownerId": "user-2"}, headers=TEAM
        )

        assert response.status_code == 200
        assert response.json()["deal"]["user_id"] == "user-2"
        keys = [call.args[0] for call in redis.xadd.call_args_list]
        assert "t:user:user-2:deals:changes" in keys

    @pytest.mark.asyncio
    async def test_assign_requires_owner(self, api):
        client, repo, _ = api
        row = repo.seed()

        response = await client.post(
            "/api/deals/assign", json={"dealId": row.id, "ownerId": ""}, headers=TEAM
        )

        assert response.status_code == 400
        assert response.json() == {"error": "ownerId is required"}

    @pytest.mark.asyncio
    async def test_reassign_removes_deal_from_previous_owner_board(self, api):
        """The old owner's personal stream gets a DELETE; team and new owner get the UPDATE."""
        client, repo, redis = api
        row = repo.seed(user_id="user-1")

        response = await client.post(
            "/api/deals/assign", json={"dealId": row.id, "ownerId": "user-2"}, headers=TEAM
        )

        assert response.status_code == 200
        published = {
            call.args[0]: call.args[1]["event_type"] for call in redis.xadd.call_args_list
        }
        assert published == {
            "t:team:team-1:deals:changes": "UPDATE",
            "t:user:user-2:deals:changes": "UPDATE",
            "t:user:user-1:deals:changes": "DELETE",
        }

    @pytest.mark.asyncio
    async def test_same_owner_publishes_nothing(self, api):
        client, repo, redis = api
        row = repo.seed(user_id="user-1")

        response = await client.post(
            "/api/deals/assign", json={"dealId": row.id, "ownerId": "user-1"}, headers=TEAM
        )

        assert response.status_code == 200
        redis.xadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_is_scoped(self, api):
        client, repo, _ = api
        mine = repo.seed(title="Mine")
        repo.seed(title="Theirs", team_id="team-2", user_id="user-9")

        response = await client.get("/api/deals", headers=TEAM)

        assert response.status_code == 200
        assert [deal["id"] for deal in response.json()["deals"]] == [mine.id]

    @pytest.mark.asyncio
    async def test_solo_user_scope(self, api):
        client, repo, _ = api
        solo = repo.seed(team_id=None, user_id="solo")
        repo.seed(team_id=None, user_id="someone-else")

        response = await client.get("/api/deals", headers={"X-User-ID": "solo"})

        assert [deal["id"] for deal in response.json()["deals"]] == [solo.id]

    @pytest.mark.asyncio
    async def test_create_deal(self, api):
        client, repo, redis = api

        response = await client.post(
            "/api/deals",
            json={"title": "Yeni", "value": 2500, "stage": "Teklif Gönderildi"},
            headers=TEAM,
        )

        assert response.status_code == 201
        deal = response.json()["deal"]
        assert deal["title"] == "Yeni"
        assert deal["stage"] == "proposal"
        assert redis.xadd.call_args_list[0].args[1]["event_type"] == "INSERT"

    @pytest.mark.asyncio
    async def test_create_rejects_blank_title(self, api):
        """Titles are trimmed; whitespace-only titles are a 400."""
        client, repo, redis = api

        response = await client.post("/api/deals", json={"title": "   "}, headers=TEAM)

        assert response.status_code == 400
        assert "error" in response.json()
        assert await repo.list_deals(BoardScope(team_id="team-1")) == []
        redis.xadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_trims_title(self, api):
        client, _, _ = api

        response = await client.post("/api/deals", json={"title": "  Yeni  "}, headers=TEAM)

        assert response.status_code == 201
        assert response.json()["deal"]["title"] == "Yeni"

    @pytest.mark.asyncio
    async def test_delete_deal(self, api):
        client, repo, redis = api
        row = repo.seed()

        response = await client.delete(f"/api/deals/{row.id}", headers=TEAM)

        assert response.status_code == 200
        assert row.id not in repo._rows
        data = redis.xadd.call_args_list[0].args[1]
        assert data["event_type"] == "DELETE"
        assert data["new"] == ""


# ── Scope, Health, Metrics ───────────────────────────────────────────────────


class TestInfrastructure:
    @pytest.mark.asyncio
    async def test_missing_scope_headers(self, api):
        client, _, _ = api

        response = await client.get("/api/deals")

        assert response.status_code == 401
        assert response.json() == {"error": "Missing team or user scope"}

    @pytest.mark.asyncio
    async def test_health_needs_no_scope(self, api):
        client, _, _ = api

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, api):
        client, _, _ = api
        await client.get("/health")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_request_id_header(self, api):
        client, _, _ = api
        response = await client.get("/health")
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_incoming_request_id_is_echoed(self, api):
        client, _, _ = api
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


@pytest.mark.asyncio
async def test_deals_api_503_when_not_initialized():
    """app.state.deal_repository = None -> 503."""
    app = create_app()
    app.state.deal_repository = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/deals", headers=TEAM)
        assert response.status_code == 503
        assert response.json() == {"error": "Deal storage not initialized"}
