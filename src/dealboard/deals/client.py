"""Async HTTP client for the deal board API.

Provides DealApiClient with retry logic (tenacity, 3 attempts, exponential
backoff 1-10s) on connection failures and timeouts only. The stage and
owner endpoints are idempotent for the same (deal, target) pair, so a
retried request cannot apply a change twice. Rejections are never retried:
they surface as DealApiError carrying the server's message.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import structlog
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.dealboard.core.tenant import BoardScope
from src.dealboard.deals.schemas import DealRow
from src.dealboard.deals.stages import Stage

logger = structlog.get_logger(__name__)

_deal_api_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class DealApiError(Exception):
    """The API answered with an error status.

    ``message`` is the server-provided error text, or None when the
    response carried none.
    """

    def __init__(self, message: str | None, status_code: int | None = None) -> None:
        super().__init__(message or f"Deal API request failed ({status_code})")
        self.message = message
        self.status_code = status_code


class StageConfirmation(BaseModel):
    """Successful stage confirmation."""

    deal_id: str
    stage: Stage
    updated_at: datetime | None = None


class OwnerAssignment(BaseModel):
    """Successful owner assignment."""

    deal_id: str
    owner_id: str
    updated_at: datetime | None = None


def _payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _raise_for_error(response: httpx.Response, payload: Any) -> None:
    if response.is_success:
        return
    message = payload.get("error") if isinstance(payload, dict) else None
    raise DealApiError(message or None, status_code=response.status_code)


def _updated_at(payload: Any) -> datetime | None:
    deal = payload.get("deal") if isinstance(payload, dict) else None
    if not isinstance(deal, dict) or not deal.get("updated_at"):
        return None
    return datetime.fromisoformat(deal["updated_at"])


class DealApiClient:
    """Client for the ``/api/deals`` endpoints.

    Args:
        base_url: API origin, e.g. ``http://localhost:8000``.
        scope: Board scope sent as X-Team-ID / X-User-ID headers.
        timeout: Per-request transport timeout in seconds.
        transport: Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        scope: BoardScope,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json", **scope.headers()}
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @_deal_api_retry
    async def confirm_stage(self, deal_id: str, stage: Stage) -> StageConfirmation:
        """POST /api/deals/stage.

        Raises:
            DealApiError: If the server rejected the change.
            httpx.HTTPError: On transport failure after retries.
        """
        async with self._client() as client:
            response = await client.post(
                "/api/deals/stage",
                json={"dealId": deal_id, "stage": stage.value},
            )
        payload = _payload(response)
        _raise_for_error(response, payload)

        confirmation = StageConfirmation(
            deal_id=deal_id, stage=stage, updated_at=_updated_at(payload)
        )
        logger.debug(
            "deal_api.stage_confirmed",
            deal_id=deal_id,
            stage=stage.value,
            updated_at=confirmation.updated_at,
        )
        return confirmation

    @_deal_api_retry
    async def assign_owner(self, deal_id: str, owner_id: str) -> OwnerAssignment:
        """POST /api/deals/assign."""
        async with self._client() as client:
            response = await client.post(
                "/api/deals/assign",
                json={"dealId": deal_id, "ownerId": owner_id},
            )
        payload = _payload(response)
        _raise_for_error(response, payload)
        return OwnerAssignment(
            deal_id=deal_id, owner_id=owner_id, updated_at=_updated_at(payload)
        )

    @_deal_api_retry
    async def list_deals(self) -> list[DealRow]:
        """GET /api/deals -- every deal in scope."""
        async with self._client() as client:
            response = await client.get("/api/deals")
        payload = _payload(response)
        _raise_for_error(response, payload)
        return [DealRow.model_validate(item) for item in payload.get("deals", [])]
