"""Pytest configuration and shared fixtures for tordirect tests."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

import pytest
from aiohttp.test_utils import TestClient, TestServer

from tordirect.config import config as config_module
from tordirect.gateway.server import GatewayServer
from tordirect.models import BroadcastConfig, Config, StorageConfig
from tordirect.session.manager import SessionManager
from tordirect.sources.memory import MemoryContentSource

HASH_A = "0123456789abcdef0123456789abcdef01234567"
HASH_B = "89abcdef0123456789abcdef0123456789abcdef"
MAGNET_A = f"magnet:?xt=urn:btih:{HASH_A}&dn=Big+Movie"

MOVIE_BYTES = bytes(range(256)) * 40  # 10240 bytes
SUBS_BYTES = b"1\n00:00:01,000 --> 00:00:02,000\nHello\n"


def pytest_configure(config):
    """Register project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("unit", "marks tests as unit tests"),
        ("integration", "marks tests as integration tests"),
        ("core", "marks tests as core functionality tests"),
        ("session", "marks tests as session management tests"),
        ("gateway", "marks tests as HTTP gateway tests"),
        ("config", "marks tests as configuration tests"),
        ("cli", "marks tests as CLI tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Undo handler changes made by setup_logging between tests."""
    yield
    for name in ("tordirect", ""):
        logger = logging.getLogger(name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
    logging.getLogger("tordirect").propagate = True


@pytest.fixture(autouse=True)
def reset_global_config():
    """Drop the global config so tests never share it."""
    config_module.reset_config()
    yield
    config_module.reset_config()


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            msg = "condition not met in time"
            raise AssertionError(msg)
        await asyncio.sleep(0.01)


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    """Writable storage root."""
    root = tmp_path / "downloads"
    root.mkdir()
    return root


@pytest.fixture
def app_config(storage_dir: Path) -> Config:
    """Configuration pointing at the temporary storage root, no throttling."""
    return Config(
        storage=StorageConfig(root=str(storage_dir)),
        broadcast=BroadcastConfig(throttle_window=0.0),
    )


@pytest.fixture
def source() -> MemoryContentSource:
    """In-memory source with two registered contents."""
    src = MemoryContentSource(chunk_size=1000)
    src.register(
        HASH_A,
        "Big Movie",
        [("Big Movie/movie.mp4", MOVIE_BYTES), ("Big Movie/movie.srt", SUBS_BYTES)],
    )
    src.register(HASH_B, "Album", [("Album/track01.flac", b"x" * 500)])
    return src


@pytest.fixture
async def manager(app_config: Config, source: MemoryContentSource):
    """Started session manager."""
    mgr = SessionManager(app_config, source)
    await mgr.start()
    yield mgr
    await mgr.stop()


@pytest.fixture
async def gateway(manager: SessionManager):
    """Gateway server wrapping the started manager."""
    return GatewayServer(manager, host="127.0.0.1", port=0)


@pytest.fixture
async def client(gateway: GatewayServer):
    """aiohttp test client bound to the gateway application."""
    test_client = TestClient(TestServer(gateway.app))
    await test_client.start_server()
    yield test_client
    await test_client.close()


@pytest.fixture
async def ready_session(manager: SessionManager):
    """Session for HASH_A with metadata announced."""
    await manager.add_content(MAGNET_A)
    await wait_until(
        lambda: manager.get_session(HASH_A) is not None
        and manager.get_session(HASH_A).files
    )
    return manager.get_session(HASH_A)
