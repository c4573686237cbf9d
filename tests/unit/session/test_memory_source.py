"""Tests for the in-memory content source."""

from __future__ import annotations

import pytest

from tordirect.core.descriptor import parse_descriptor
from tordirect.session.source import ContentSource, SourceFile
from tordirect.sources.memory import MemoryContentSource

pytestmark = [pytest.mark.unit, pytest.mark.session]

CID = "0123456789abcdef0123456789abcdef01234567"


async def _collect(iterator):
    return b"".join([chunk async for chunk in iterator])


@pytest.fixture
async def started():
    source = MemoryContentSource(chunk_size=4, announce_metadata=False)
    source.register(CID, "Data", {"Data/a.bin": b"0123456789"})
    handle = await source.start(parse_descriptor(CID))
    yield source, handle
    await source.close()


def test_satisfies_protocol():
    assert isinstance(MemoryContentSource(), ContentSource)


def test_source_file_display_name():
    assert SourceFile(path="dir\\sub\\file.mkv", length=1).display_name == "file.mkv"
    assert SourceFile(path="x/y.mkv", length=1, name="Nice").display_name == "Nice"


async def test_read_range_is_inclusive(started):
    source, handle = started
    assert await _collect(source.read_range(handle, 0, 2, 5)) == b"2345"
    assert await _collect(source.read_range(handle, 0, 7)) == b"789"
    assert await _collect(source.read_range(handle, 0, 0, 100)) == b"0123456789"


async def test_read_after_stop_fails(started):
    source, handle = started
    await source.stop(handle)
    assert source.stopped == [CID]
    with pytest.raises(OSError):
        await _collect(source.read_range(handle, 0, 0))


async def test_unknown_file_fails(started):
    source, handle = started
    with pytest.raises(OSError):
        await _collect(source.read_range(handle, 3, 0))
