"""HTTP client for the deal (payments) API.

Implements the ``DealStore`` protocol the deal controller writes through.
Transport errors, timeouts, non-2xx responses and 2xx responses whose body
is not JSON all surface as ``DealPersistenceError`` so the controller can
roll back.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from referral_desk.app.config import get_settings
from referral_desk.services.deal_errors import DealPersistenceError

logger = logging.getLogger(__name__)

PAYMENTS_PATH = "/api/payments"


class DealApiClient:
    """Async client for ``/api/payments`` backed by httpx."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.request_timeout_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def list_deals(self, referral_id: str) -> list[dict]:
        data = await self._send(
            "GET", params={"referral_id": referral_id}, failure="Unable to load deals"
        )
        return data if isinstance(data, list) else []

    async def create_deal(self, referral_id: str, fields: dict) -> dict:
        return await self._send(
            "POST", json={"referral_id": referral_id, **fields}, failure="Unable to create deal"
        )

    async def update_deal(self, deal_id: str, fields: dict) -> dict:
        return await self._send(
            "PATCH", json={"id": deal_id, **fields}, failure="Unable to update deal"
        )

    async def delete_deal(self, deal_id: str) -> None:
        await self._send("DELETE", json={"id": deal_id}, failure="Unable to delete deal")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        failure: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ):
        url = f"{self._base_url}{PAYMENTS_PATH}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.request(method, url, json=json, params=params)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("Deal API %s %s returned HTTP %s", method, url, status)
            raise DealPersistenceError(_error_message(exc.response, failure), status) from exc
        except httpx.HTTPError as exc:
            logger.warning("Deal API %s %s failed: %s", method, url, exc)
            raise DealPersistenceError(failure) from exc

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            logger.warning("Deal API %s %s returned a non-JSON body (HTTP %s)", method, url, resp.status_code)
            raise DealPersistenceError(failure, resp.status_code) from exc


def _error_message(response: httpx.Response, fallback: str) -> str:
    """Use the API's ``detail`` string when it sent one."""
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict) and isinstance(body.get("detail"), str):
        return body["detail"]
    return fallback
