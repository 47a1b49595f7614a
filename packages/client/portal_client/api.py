"""
REST client for the portal chat server.

Handles:
- Channel listing
- History fetches (newest first, as the server returns them)
- Posting a message when no realtime connection is available
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from portal_shared.schemas.chat import ChannelResponse, ChatMessagePayload, PostMessageRequest
from portal_shared.schemas.common import ErrorResponse

log = structlog.get_logger()


class ApiError(Exception):
    """The server answered with an error status."""

    def __init__(self, status: int, code: str | None, message: str):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message


class PortalApiClient:
    """Thin async wrapper over the /api/v1 chat endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        verify_tls: bool = True,
        request_timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}/api/v1",
            headers=headers,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> PortalApiClient:
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def list_channels(self) -> list[ChannelResponse]:
        data = await self._request("GET", "/channels")
        return [ChannelResponse.model_validate(item) for item in data]

    async def list_messages(self, channel_id: int, limit: int = 50) -> list[ChatMessagePayload]:
        """Most recent first. Callers reverse for display."""
        data = await self._request("GET", f"/channels/{channel_id}/messages", params={"limit": limit})
        return [ChatMessagePayload.model_validate(item) for item in data]

    async def post_message(self, channel_id: int, content: str) -> ChatMessagePayload:
        body = PostMessageRequest(content=content).to_wire()
        data = await self._request("POST", f"/channels/{channel_id}/messages", json=body)
        return ChatMessagePayload.model_validate(data)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        assert self._client, "PortalApiClient.open() was not called"
        resp = await self._client.request(method, path, **kwargs)
        if resp.is_error:
            code, message = None, resp.text
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and "error" in body:
                try:
                    error = ErrorResponse.model_validate(body).error
                except ValidationError:
                    log.debug("api.unrecognized_error_body", path=path)
                else:
                    code, message = error.code, error.message
            elif isinstance(body, dict) and "detail" in body:
                message = str(body["detail"])
            log.warning("api.request_failed", method=method, path=path, status=resp.status_code, code=code)
            raise ApiError(resp.status_code, code, message)
        return resp.json()
