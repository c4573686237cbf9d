"""Gateway client.

Provides an aiohttp client for the gateway HTTP API and event stream.
Error responses are turned back into the matching ``TorDirectError``
subclass using the ``code`` field of the body.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import aiohttp

from tordirect.gateway.protocol import (
    EVENTS_PATH,
    HEALTH_PATH,
    SESSIONS_PATH,
    AddContentRequest,
    AddContentResponse,
    ErrorResponse,
    HealthResponse,
    RemoveContentResponse,
    SessionListResponse,
)
from tordirect.utils import exceptions
from tordirect.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_URL = "http://127.0.0.1:3000"


def _error_classes() -> dict[str, type[exceptions.TorDirectError]]:
    classes: dict[str, type[exceptions.TorDirectError]] = {}
    for value in vars(exceptions).values():
        if isinstance(value, type) and issubclass(value, exceptions.TorDirectError):
            if value is not exceptions.RangeNotSatisfiableError:
                classes.setdefault(value.code, value)
    return classes


_ERRORS_BY_CODE = _error_classes()


class GatewayClient:
    """Client for a running tordirect gateway."""

    def __init__(self, base_url: str | None = None, timeout: float = 30.0):
        """Initialize the client.

        Args:
            base_url: Gateway URL, defaults to http://127.0.0.1:3000
            timeout: Request timeout in seconds

        """
        self.base_url = (base_url or DEFAULT_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _raise_for_error(self, resp: aiohttp.ClientResponse) -> None:
        if resp.status < 400:
            return
        try:
            error = ErrorResponse(**await resp.json())
        except (aiohttp.ContentTypeError, ValueError, TypeError):
            resp.raise_for_status()
            return
        error_class = _ERRORS_BY_CODE.get(error.code, exceptions.TorDirectError)
        raise error_class(error.error, error.details)

    async def health(self) -> HealthResponse:
        """Get gateway health."""
        session = await self._ensure_session()
        async with session.get(f"{self.base_url}{HEALTH_PATH}") as resp:
            await self._raise_for_error(resp)
            return HealthResponse(**await resp.json())

    async def list_sessions(self) -> list[dict[str, Any]]:
        """List all sessions."""
        session = await self._ensure_session()
        async with session.get(f"{self.base_url}{SESSIONS_PATH}") as resp:
            await self._raise_for_error(resp)
            return SessionListResponse(**await resp.json()).sessions

    async def get_session(self, content_id: str) -> dict[str, Any]:
        """Get one session snapshot."""
        session = await self._ensure_session()
        async with session.get(f"{self.base_url}{SESSIONS_PATH}/{content_id}") as resp:
            await self._raise_for_error(resp)
            return await resp.json()

    async def add_content(self, descriptor: str, strict: bool = False) -> AddContentResponse:
        """Add content by magnet URI or info hash.

        Raises:
            InvalidDescriptorError: If the gateway rejects the descriptor
            AlreadyExistsError: If ``strict`` and the content is present
            SourceStartFailedError: If the transfer could not be started

        """
        session = await self._ensure_session()
        req = AddContentRequest(descriptor=descriptor, strict=strict)
        async with session.post(
            f"{self.base_url}{SESSIONS_PATH}", json=req.model_dump()
        ) as resp:
            await self._raise_for_error(resp)
            return AddContentResponse(**await resp.json())

    async def remove_content(self, content_id: str) -> RemoveContentResponse:
        """Remove a session."""
        session = await self._ensure_session()
        async with session.delete(f"{self.base_url}{SESSIONS_PATH}/{content_id}") as resp:
            await self._raise_for_error(resp)
            return RemoveContentResponse(**await resp.json())

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield pushed events until the connection closes.

        Server heartbeat pings are answered and not yielded.
        """
        session = await self._ensure_session()
        ws_url = self.base_url.replace("http", "ws", 1) + EVENTS_PATH
        async with session.ws_connect(ws_url) as ws:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = msg.json()
                    if data.get("action") == "ping":
                        await ws.send_json({"action": "pong"})
                        continue
                    yield data
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break

    async def is_reachable(self) -> bool:
        """Return True if the gateway answers the health check."""
        try:
            await self.health()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Gateway at %s not reachable: %s", self.base_url, e)
            return False
        return True
