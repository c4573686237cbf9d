"""Tests for the persistent descriptor log."""

from __future__ import annotations

import pytest

from tordirect.core.descriptor import parse_descriptor
from tordirect.session.persistence import PersistentLog
from tordirect.utils.exceptions import PersistenceWriteFailedError

pytestmark = [pytest.mark.unit, pytest.mark.session]

HASH_A = "0123456789abcdef0123456789abcdef01234567"
HASH_B = "89abcdef0123456789abcdef0123456789abcdef"


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / ".saved_torrents.txt"


async def test_load_missing_file_is_empty(log_path):
    """Test a missing log loads as empty."""
    assert await PersistentLog(log_path).load() == []


async def test_append_creates_file_and_dedupes(log_path):
    """Test append writes one line per content id."""
    log = PersistentLog(log_path)
    assert await log.append(parse_descriptor(HASH_A)) is True
    assert await log.append(parse_descriptor(f"magnet:?xt=urn:btih:{HASH_A}&dn=x")) is False
    assert log_path.read_text(encoding="utf-8") == f"magnet:?xt=urn:btih:{HASH_A}\n"


async def test_append_adds_missing_trailing_newline(log_path):
    """Test append does not glue onto a line without newline."""
    log_path.write_text(f"magnet:?xt=urn:btih:{HASH_A}", encoding="utf-8")
    log = PersistentLog(log_path)
    await log.append(parse_descriptor(HASH_B))
    assert log_path.read_text(encoding="utf-8").splitlines() == [
        f"magnet:?xt=urn:btih:{HASH_A}",
        f"magnet:?xt=urn:btih:{HASH_B}",
    ]


async def test_load_skips_bad_lines_and_duplicates(log_path):
    """Test load tolerates junk, comments and repeated entries."""
    log_path.write_text(
        "\n".join(
            [
                "# saved sessions",
                f"magnet:?xt=urn:btih:{HASH_A}",
                "this is not a descriptor",
                "",
                HASH_B,
                f"magnet:?xt=urn:btih:{HASH_A.upper()}",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    descriptors = await PersistentLog(log_path).load()
    assert [d.content_id for d in descriptors] == [HASH_A, HASH_B]


async def test_remove_compacts_and_keeps_unparsable(log_path):
    """Test remove drops every entry for the id and blank lines only."""
    log_path.write_text(
        "\n".join(
            [
                f"magnet:?xt=urn:btih:{HASH_A}",
                "",
                "# keep me",
                HASH_B,
                f"magnet:?xt=urn:btih:{HASH_A}&dn=dup",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    log = PersistentLog(log_path)
    assert await log.remove(HASH_A) is True
    assert log_path.read_text(encoding="utf-8") == f"# keep me\n{HASH_B}\n"
    assert not log_path.with_name(log_path.name + ".tmp").exists()


async def test_remove_absent_id_leaves_file(log_path):
    """Test removing an unknown id does not rewrite the file."""
    original = f"magnet:?xt=urn:btih:{HASH_A}\n\n"
    log_path.write_text(original, encoding="utf-8")
    assert await PersistentLog(log_path).remove(HASH_B) is False
    assert log_path.read_text(encoding="utf-8") == original


async def test_append_failure_raises_persistence_error(tmp_path):
    """Test an unwritable location surfaces PersistenceWriteFailedError."""
    log = PersistentLog(tmp_path / "missing-dir" / "log.txt")
    with pytest.raises(PersistenceWriteFailedError):
        await log.append(parse_descriptor(HASH_A))


async def test_undecodable_bytes_survive_load_and_compaction(log_path):
    """Test a line that is not valid UTF-8 is ignored and kept byte for byte."""
    log_path.write_bytes(
        f"magnet:?xt=urn:btih:{HASH_A}\n".encode()
        + b"\xff\xfe garbage\n"
        + f"{HASH_B}\n".encode()
    )
    log = PersistentLog(log_path)

    descriptors = await log.load()
    assert [d.content_id for d in descriptors] == [HASH_A, HASH_B]

    assert await log.append(parse_descriptor(HASH_B)) is False
    assert await log.remove(HASH_A) is True
    assert log_path.read_bytes() == b"\xff\xfe garbage\n" + f"{HASH_B}\n".encode()
