"""Gateway process entry point.

Wires the content source, session manager and HTTP gateway together and
runs them until SIGINT or SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any

from tordirect.gateway.server import GatewayServer
from tordirect.models import Config
from tordirect.session.manager import SessionManager
from tordirect.session.source import ContentSource, create_source
from tordirect.utils.logging_config import LoggingContext, get_logger

logger = get_logger(__name__)


class DaemonMain:
    """Main gateway process manager."""

    def __init__(self, config: Config, source: ContentSource | None = None):
        """Initialize the process.

        Args:
            config: Loaded configuration
            source: Content source, built from ``config.source`` if omitted

        """
        self.config = config
        self.source = source
        self.session_manager: SessionManager | None = None
        self.gateway: GatewayServer | None = None

        self._shutdown_event = asyncio.Event()
        self._stopping = False

    async def start(self) -> None:
        """Start the session manager, then the gateway."""
        with LoggingContext("daemon_start"):
            if self.source is None:
                self.source = create_source(self.config.source)

            self.session_manager = SessionManager(self.config, self.source)
            await self.session_manager.start()

            gateway_config = self.config.gateway
            self.gateway = GatewayServer(
                self.session_manager,
                host=gateway_config.host,
                port=gateway_config.port,
                websocket_heartbeat_interval=gateway_config.websocket_heartbeat_interval,
                stream_chunk_size=gateway_config.stream_chunk_size,
            )
            await self.gateway.start()

    async def stop(self) -> None:
        """Stop the gateway and all transfers. Safe to call twice."""
        if self._stopping:
            return
        self._stopping = True
        with LoggingContext("daemon_stop"):
            if self.gateway is not None:
                await self.gateway.stop()
            if self.session_manager is not None:
                await self.session_manager.stop()

    def request_shutdown(self) -> None:
        """Ask :meth:`run` to return."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def handler(signum: int, _frame: Any = None) -> None:
            logger.info("Received signal %d, initiating shutdown", signum)
            loop.call_soon_threadsafe(self._shutdown_event.set)

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, handler, signum)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler.
                signal.signal(signum, handler)

    async def run(self) -> None:
        """Run until a shutdown signal arrives."""
        try:
            await self.start()
            self._setup_signal_handlers()
            logger.info("tordirect running, press Ctrl+C to stop")
            await self._shutdown_event.wait()
        finally:
            await self.stop()


def run_daemon(config: Config) -> int:
    """Run the gateway in the current process and return an exit code."""
    daemon = DaemonMain(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        return 0
    except Exception:
        logger.exception("tordirect stopped with a fatal error")
        return 1
    return 0


if __name__ == "__main__":
    from tordirect.config.config import init_config

    sys.exit(run_daemon(init_config().config))
