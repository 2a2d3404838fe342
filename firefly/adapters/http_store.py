"""HTTP remote store adapter — implements RemoteStorePort over HTTPS.

All transport-specific logic lives here. The sync coordinator never imports
this directly; it depends on the RemoteStorePort protocol.

Every request carries the current bearer token; writes also carry an
``Idempotency-Key`` header so a replayed create returns the original row.
Status mapping: 2xx → record, 4xx → RemoteRejection, 5xx / timeout /
transport error → NetworkFailure. 401, 408 and 429 are treated as
transient too: the token is refreshed out of band and throttling passes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ValidationError

from firefly.data.remote_records import RemoteAction, RemoteSession
from firefly.ports.auth_port import AuthError
from firefly.ports.remote_store_port import NetworkFailure, RemoteRejection

if TYPE_CHECKING:
    from firefly.ports.auth_port import TokenProvider

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10
_TRANSIENT_CLIENT_ERRORS = {401, 408, 429}


def _unwrap(data):
    """Some endpoints return the written row wrapped in a one-element list."""
    if isinstance(data, list):
        return data[0] if data else {}
    return data


class HttpRemoteStore:
    """REST implementation of RemoteStorePort."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        api_key: str = "",
        timeout: float = _TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._tokens = token_provider
        self._api_key = api_key
        self._timeout = timeout

    async def _headers(self, idempotency_key: str | None) -> dict:
        try:
            token = await self._tokens.get_access_token()
        except AuthError as exc:
            raise NetworkFailure(f"No access token available: {exc}") from exc

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["apikey"] = self._api_key
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        headers = await self._headers(idempotency_key)
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.request(
                    method, url, json=json, params=params, headers=headers,
                )
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out", method, path)
            raise NetworkFailure(f"Timeout on {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("%s %s transport error: %s", method, path, exc)
            raise NetworkFailure(f"Network error on {method} {path}: {exc}") from exc

        status = resp.status_code
        if status >= 500 or status in _TRANSIENT_CLIENT_ERRORS:
            raise NetworkFailure(f"{method} {path} returned {status}")
        if status >= 400:
            detail = resp.text[:200]
            logger.error("%s %s rejected (%d): %s", method, path, status, detail)
            raise RemoteRejection(f"{method} {path} rejected ({status}): {detail}", status)
        return resp

    @staticmethod
    def _parse_record(resp: httpx.Response, model: type[BaseModel]) -> dict:
        try:
            record = model.model_validate(_unwrap(resp.json()))
        except (ValueError, ValidationError) as exc:
            raise RemoteRejection(f"Malformed response body: {exc}", resp.status_code) from exc
        return record.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, payload: dict, idempotency_key: str) -> dict:
        resp = await self._request(
            "POST", "/sessions", json=payload, idempotency_key=idempotency_key,
        )
        record = self._parse_record(resp, RemoteSession)
        logger.info("Remote session created: %s", record["id"])
        return record

    async def update_session(
        self, session_id: str, payload: dict, idempotency_key: str
    ) -> dict:
        resp = await self._request(
            "PATCH", f"/sessions/{session_id}", json=payload,
            idempotency_key=idempotency_key,
        )
        return self._parse_record(resp, RemoteSession)

    async def list_sessions(self, user_id: str) -> list[dict]:
        resp = await self._request("GET", "/sessions", params={"user_id": user_id})
        data = resp.json()
        return data if isinstance(data, list) else []

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def create_action(
        self, session_id: str, payload: dict, idempotency_key: str
    ) -> dict:
        resp = await self._request(
            "POST", f"/sessions/{session_id}/actions", json=payload,
            idempotency_key=idempotency_key,
        )
        record = self._parse_record(resp, RemoteAction)
        logger.info("Remote action created: %s", record["id"])
        return record

    async def update_action(
        self, action_id: str, payload: dict, idempotency_key: str
    ) -> dict:
        resp = await self._request(
            "PATCH", f"/actions/{action_id}", json=payload,
            idempotency_key=idempotency_key,
        )
        return self._parse_record(resp, RemoteAction)

    async def delete_action(self, action_id: str, idempotency_key: str) -> None:
        try:
            await self._request(
                "DELETE", f"/actions/{action_id}", idempotency_key=idempotency_key,
            )
        except RemoteRejection as exc:
            if exc.status_code == 404:
                logger.info("Remote action %s already gone", action_id)
                return
            raise

    async def list_actions(self, session_id: str) -> list[dict]:
        resp = await self._request("GET", f"/sessions/{session_id}/actions")
        data = resp.json()
        return data if isinstance(data, list) else []

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Cheap reachability probe. Never raises."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(f"{self._base_url}/health")
            return resp.status_code < 500
        except Exception as exc:
            logger.debug("Remote store unreachable: %s", exc)
            return False
