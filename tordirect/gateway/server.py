"""HTTP gateway server.

Exposes session management, file streaming and a WebSocket push channel
over aiohttp.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from tordirect import __version__
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
    WebSocketMessage,
)
from tordirect.gateway.streaming import StreamingGateway
from tordirect.utils.exceptions import SessionNotFoundError, StreamIOError, TorDirectError
from tordirect.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from aiohttp.web_request import Request
    from aiohttp.web_response import Response

    from tordirect.gateway.broadcast import ObserverHandle
    from tordirect.session.manager import SessionManager

logger = get_logger(__name__)


def _error_response(
    error: str,
    code: str,
    status: int,
    details: dict[str, Any] | None = None,
) -> web.Response:
    return web.json_response(
        ErrorResponse(error=error, code=code, details=details or None).model_dump(),
        status=status,
    )


class GatewayServer:
    """aiohttp application serving the gateway API."""

    def __init__(
        self,
        session_manager: SessionManager,
        host: str = "0.0.0.0",
        port: int = 3000,
        websocket_heartbeat_interval: float = 15.0,
        stream_chunk_size: int = 64 * 1024,
    ):
        """Initialize the gateway server.

        Args:
            session_manager: Session manager backing the API
            host: Host to bind to
            port: Port to bind to
            websocket_heartbeat_interval: Seconds between server pings
            stream_chunk_size: Largest single write when streaming a file

        """
        self.session_manager = session_manager
        self.host = host
        self.port = port
        self.websocket_heartbeat_interval = websocket_heartbeat_interval
        self.streaming = StreamingGateway(session_manager, chunk_size=stream_chunk_size)

        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self._start_time = time.time()

        self._websocket_connections: set[web.WebSocketResponse] = set()
        self._websocket_heartbeat_tasks: dict[web.WebSocketResponse, asyncio.Task] = {}

        self._setup_middleware()
        self._setup_routes()

    def _setup_middleware(self) -> None:
        """Set up error handling middleware."""

        @web.middleware
        async def error_middleware(request: Request, handler: Any) -> Response:
            """Map exceptions to ErrorResponse bodies."""
            try:
                return await handler(request)
            except asyncio.CancelledError:
                raise
            except web.HTTPException:
                raise
            except StreamIOError:
                raise
            except TorDirectError as e:
                logger.debug(
                    "%s %s -> %d %s: %s",
                    request.method,
                    request.path,
                    e.http_status,
                    e.code,
                    e.message,
                )
                return _error_response(e.message, e.code, e.http_status, e.details)
            except Exception as e:
                logger.exception(
                    "Error handling request %s %s from %s",
                    request.method,
                    request.path,
                    request.remote,
                )
                return _error_response(str(e), "INTERNAL_ERROR", 500)

        self.app.middlewares.append(error_middleware)

    def _setup_routes(self) -> None:
        """Set up HTTP and WebSocket routes."""
        router = self.app.router
        router.add_get(HEALTH_PATH, self._handle_health)
        router.add_get(SESSIONS_PATH, self._handle_list_sessions)
        router.add_post(SESSIONS_PATH, self._handle_add_content)
        router.add_get(f"{SESSIONS_PATH}/{{content_id}}", self._handle_get_session)
        router.add_delete(
            f"{SESSIONS_PATH}/{{content_id}}", self._handle_remove_content
        )
        router.add_get(
            f"{SESSIONS_PATH}/{{content_id}}/stream/{{file_index}}",
            self._handle_stream,
            allow_head=False,
        )
        router.add_get(
            f"{SESSIONS_PATH}/{{content_id}}/download/{{file_index}}",
            self._handle_download,
            allow_head=False,
        )
        router.add_get(EVENTS_PATH, self._handle_websocket)

    # Handlers

    async def _handle_health(self, _request: Request) -> Response:
        """Handle GET /health."""
        health = HealthResponse(
            status="running",
            version=__version__,
            uptime=time.time() - self._start_time,
            num_sessions=len(self.session_manager.registry),
            num_observers=self.session_manager.broadcast.observer_count,
        )
        return web.json_response(health.model_dump())

    async def _handle_list_sessions(self, _request: Request) -> Response:
        """Handle GET /sessions."""
        sessions = [s.to_snapshot() for s in self.session_manager.list_sessions()]
        return web.json_response(SessionListResponse(sessions=sessions).model_dump())

    async def _handle_get_session(self, request: Request) -> Response:
        """Handle GET /sessions/{content_id}."""
        content_id = request.match_info["content_id"]
        session = self.session_manager.get_session(content_id)
        if session is None:
            msg = "Torrent not found"
            raise SessionNotFoundError(msg, {"content_id": content_id})
        return web.json_response(session.to_snapshot())

    async def _handle_add_content(self, request: Request) -> Response:
        """Handle POST /sessions."""
        try:
            data = await request.json()
        except ValueError as json_error:
            logger.warning(
                "Invalid JSON in add request from %s: %s",
                request.remote,
                json_error,
            )
            return _error_response(f"Invalid JSON: {json_error}", "INVALID_JSON", 400)

        if not isinstance(data, dict):
            return _error_response(
                "Request body must be a JSON object", "VALIDATION_ERROR", 400
            )
        try:
            req = AddContentRequest(**data)
        except PydanticValidationError as validation_error:
            return _error_response(
                f"Invalid request data: {validation_error}", "VALIDATION_ERROR", 400
            )

        result = await self.session_manager.add_content(req.descriptor, strict=req.strict)
        body = AddContentResponse(
            content_id=result.content_id,
            already_present=result.already_present,
            warnings=result.warnings,
            session=result.session.to_snapshot(),
        )
        return web.json_response(
            body.model_dump(),
            status=200 if result.already_present else 201,
        )

    async def _handle_remove_content(self, request: Request) -> Response:
        """Handle DELETE /sessions/{content_id}."""
        result = await self.session_manager.remove_content(
            request.match_info["content_id"]
        )
        body = RemoveContentResponse(
            content_id=result.content_id,
            warnings=result.warnings,
        )
        return web.json_response(body.model_dump())

    async def _handle_stream(self, request: Request) -> web.StreamResponse:
        """Handle GET /sessions/{content_id}/stream/{file_index}."""
        return await self.streaming.serve(
            request,
            request.match_info["content_id"],
            request.match_info["file_index"],
        )

    async def _handle_download(self, request: Request) -> web.StreamResponse:
        """Handle GET /sessions/{content_id}/download/{file_index}."""
        return await self.streaming.serve(
            request,
            request.match_info["content_id"],
            request.match_info["file_index"],
            attachment=True,
        )

    async def _handle_websocket(self, request: Request) -> web.WebSocketResponse:
        """Handle the WebSocket push channel."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._websocket_connections.add(ws)
        self._websocket_heartbeat_tasks[ws] = asyncio.create_task(
            self._websocket_heartbeat(ws)
        )

        async def sink(message: dict[str, Any]) -> None:
            await ws.send_json(message)

        close_tasks: list[asyncio.Task] = []

        def on_drop(dropped: ObserverHandle) -> None:
            # The client reconnects to get a fresh snapshot.
            if not ws.closed:
                close_tasks.append(
                    asyncio.create_task(
                        ws.close(
                            code=aiohttp.WSCloseCode.TRY_AGAIN_LATER,
                            message=b"Observer fell behind",
                        )
                    )
                )

        observer = self.session_manager.broadcast.attach(sink, on_drop=on_drop)
        logger.debug("WebSocket observer %d connected from %s", observer.id, request.remote)

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = WebSocketMessage(**msg.json())
                    except (ValueError, TypeError) as e:
                        await ws.send_json({"action": "error", "error": str(e)})
                        continue

                    if message.action == "ping":
                        await ws.send_json({"action": "pong"})
                    elif message.action == "pong":
                        continue
                    else:
                        await ws.send_json(
                            {
                                "action": "error",
                                "error": f"Unknown action: {message.action}",
                            }
                        )

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
                    break
        finally:
            await self.session_manager.broadcast.detach(observer)
            self._websocket_connections.discard(ws)
            task = self._websocket_heartbeat_tasks.pop(ws, None)
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if close_tasks:
                await asyncio.gather(*close_tasks)

        return ws

    async def _websocket_heartbeat(self, ws: web.WebSocketResponse) -> None:
        """Send periodic heartbeat to WebSocket connection."""
        try:
            while not ws.closed:
                await asyncio.sleep(self.websocket_heartbeat_interval)
                if not ws.closed:
                    await ws.send_json({"action": "ping"})
        except ConnectionResetError as e:
            logger.debug("WebSocket heartbeat stopped: %s", e)

    # Server lifecycle

    async def start(self) -> None:
        """Start serving."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        self._start_time = time.time()
        logger.info("Gateway listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Stop the server and close WebSocket connections."""
        for ws in list(self._websocket_connections):
            if not ws.closed:
                await ws.close()

        for task in self._websocket_heartbeat_tasks.values():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._websocket_connections.clear()
        self._websocket_heartbeat_tasks.clear()

        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()

        logger.info("Gateway stopped")
