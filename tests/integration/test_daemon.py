"""Tests for the gateway process wiring."""

from __future__ import annotations

import asyncio

import pytest

from tests.conftest import HASH_A, MAGNET_A
from tordirect.daemon.main import DaemonMain, run_daemon
from tordirect.gateway.client import GatewayClient
from tordirect.models import Config, GatewayConfig, StorageConfig

pytestmark = [pytest.mark.integration]


@pytest.fixture
def daemon_config(app_config, unused_tcp_port) -> Config:
    return app_config.model_copy(
        update={"gateway": GatewayConfig(host="127.0.0.1", port=unused_tcp_port)}
    )


async def test_sessions_survive_restart(daemon_config):
    """Test an added session is replayed by the next process."""
    first = DaemonMain(daemon_config)
    await first.start()
    try:
        await first.session_manager.add_content(MAGNET_A)
    finally:
        await first.stop()

    second = DaemonMain(daemon_config)
    await second.start()
    try:
        sessions = second.session_manager.list_sessions()
        assert [s.content_id for s in sessions] == [HASH_A]
        assert sessions[0].descriptor == MAGNET_A
    finally:
        await second.stop()


async def test_run_until_shutdown(daemon_config):
    """Test run serves HTTP until shutdown is requested."""
    daemon = DaemonMain(daemon_config)
    task = asyncio.create_task(daemon.run())
    url = f"http://127.0.0.1:{daemon_config.gateway.port}"
    try:
        async with GatewayClient(url, timeout=1.0) as gc:
            for _ in range(100):
                if daemon.gateway is not None and await gc.is_reachable():
                    break
                await asyncio.sleep(0.02)
            health = await gc.health()
            assert health.status == "running"
    finally:
        daemon.request_shutdown()
        await asyncio.wait_for(task, 5)

    await daemon.stop()
    assert task.done()


def test_run_daemon_reports_failure(tmp_path):
    """Test an unusable storage root exits with status 1."""
    cfg = Config(storage=StorageConfig(root=str(tmp_path / "missing")))
    assert run_daemon(cfg) == 1
