"""Tests for GatewayClient against a live test server."""

from __future__ import annotations

import pytest

from tests.conftest import HASH_A, MAGNET_A
from tordirect.gateway.client import GatewayClient
from tordirect.utils.exceptions import (
    AlreadyExistsError,
    InvalidDescriptorError,
    SessionNotFoundError,
)

pytestmark = [pytest.mark.integration, pytest.mark.gateway]


@pytest.fixture
async def gateway_client(client):
    base_url = str(client.server.make_url("/")).rstrip("/")
    async with GatewayClient(base_url, timeout=5.0) as gc:
        yield gc


async def test_health(gateway_client):
    health = await gateway_client.health()
    assert health.status == "running"
    assert await gateway_client.is_reachable() is True


async def test_add_list_get_remove(gateway_client):
    result = await gateway_client.add_content(MAGNET_A)
    assert result.content_id == HASH_A
    assert result.already_present is False

    again = await gateway_client.add_content(HASH_A)
    assert again.already_present is True

    sessions = await gateway_client.list_sessions()
    assert [s["content_id"] for s in sessions] == [HASH_A]

    session = await gateway_client.get_session(HASH_A)
    assert session["content_id"] == HASH_A

    removed = await gateway_client.remove_content(HASH_A)
    assert removed.content_id == HASH_A
    assert await gateway_client.list_sessions() == []


async def test_errors_map_to_exceptions(gateway_client):
    """Test error bodies are raised as the matching exception class."""
    with pytest.raises(InvalidDescriptorError):
        await gateway_client.add_content("nope")

    with pytest.raises(SessionNotFoundError) as excinfo:
        await gateway_client.get_session(HASH_A)
    assert excinfo.value.code == "SESSION_NOT_FOUND"

    await gateway_client.add_content(MAGNET_A)
    with pytest.raises(AlreadyExistsError):
        await gateway_client.add_content(MAGNET_A, strict=True)


async def test_events_yields_snapshot(gateway_client):
    await gateway_client.add_content(MAGNET_A)
    events = gateway_client.events()
    try:
        first = await events.__anext__()
    finally:
        await events.aclose()
    assert first["type"] == "snapshot"
    assert first["data"]["sessions"][0]["content_id"] == HASH_A


async def test_unreachable_gateway(unused_tcp_port):
    async with GatewayClient(f"http://127.0.0.1:{unused_tcp_port}", timeout=1.0) as gc:
        assert await gc.is_reachable() is False
