"""Tests for the session registry invariants."""

from __future__ import annotations

import pytest

from tordirect.models import METADATA_PLACEHOLDER, FileEntry, LifecycleState
from tordirect.session.registry import SessionRegistry

pytestmark = [pytest.mark.unit, pytest.mark.session]

CID = "0123456789abcdef0123456789abcdef01234567"


def _files(*lengths):
    return [
        FileEntry(index=i, relative_path=f"dir/f{i}", name=f"f{i}", length=length)
        for i, length in enumerate(lengths)
    ]


def _set_files(*lengths):
    def apply(session):
        session.files = _files(*lengths)

    return apply


class TestUpsert:
    """Test SessionRegistry.upsert."""

    def test_creates_added_session(self):
        """Test first upsert creates a session in the Added state."""
        registry = SessionRegistry()
        session = registry.upsert(CID)
        assert session.lifecycle_state == LifecycleState.ADDED
        assert session.revision == 1
        assert session.name == METADATA_PLACEHOLDER
        assert session.progress == 0.0
        assert CID in registry
        assert len(registry) == 1

    def test_files_advance_to_metadata_ready(self):
        """Test a file list moves the session to MetadataReady."""
        registry = SessionRegistry()
        registry.upsert(CID)
        session = registry.upsert(CID, _set_files(100, 50))
        assert session.lifecycle_state == LifecycleState.METADATA_READY
        assert session.total_length == 150
        assert session.revision == 2

    def test_file_layout_is_immutable(self):
        """Test a second file list does not replace the first."""
        registry = SessionRegistry()
        registry.upsert(CID, _set_files(100, 50))
        session = registry.upsert(CID, _set_files(999))
        assert [f.length for f in session.files] == [100, 50]

        def clear(s):
            s.files = []

        assert len(registry.upsert(CID, clear).files) == 2

    def test_lifecycle_never_regresses(self):
        """Test lifecycle cannot move backwards."""
        registry = SessionRegistry()
        registry.upsert(CID, _set_files(10))

        def done(s):
            s.lifecycle_state = LifecycleState.DONE

        def back(s):
            s.lifecycle_state = LifecycleState.DOWNLOADING

        registry.upsert(CID, done)
        assert registry.upsert(CID, back).lifecycle_state == LifecycleState.DONE

    def test_states_past_added_require_files(self):
        """Test a session without files stays Added."""
        registry = SessionRegistry()

        def downloading(s):
            s.lifecycle_state = LifecycleState.DOWNLOADING

        assert registry.upsert(CID, downloading).lifecycle_state == LifecycleState.ADDED

    def test_downloaded_is_clamped(self):
        """Test downloaded bytes never exceed the total or the file length."""
        registry = SessionRegistry()
        registry.upsert(CID, _set_files(100))

        def overflow(s):
            s.downloaded_bytes = 1000
            s.files[0].downloaded_bytes = 1000

        session = registry.upsert(CID, overflow)
        assert session.downloaded_bytes == 100
        assert session.files[0].downloaded_bytes == 100
        assert session.progress == 1.0

    def test_removed_cannot_be_upserted(self):
        """Test Removed is only reachable through remove()."""
        registry = SessionRegistry()

        def removed(s):
            s.lifecycle_state = LifecycleState.REMOVED

        with pytest.raises(ValueError):
            registry.upsert(CID, removed)
        assert CID not in registry

    def test_content_id_is_immutable(self):
        """Test the mutator cannot rename the session."""
        registry = SessionRegistry()

        def rename(s):
            s.content_id = "f" * 40

        with pytest.raises(ValueError):
            registry.upsert(CID, rename)

    def test_readers_keep_old_object(self):
        """Test an upsert never mutates a previously returned session."""
        registry = SessionRegistry()
        before = registry.upsert(CID, _set_files(100))

        def progress(s):
            s.downloaded_bytes = 40

        after = registry.upsert(CID, progress)
        assert before.downloaded_bytes == 0
        assert after.downloaded_bytes == 40
        assert registry.get(CID) is after


def test_remove_and_list_order():
    """Test list_all keeps insertion order and remove reports presence."""
    registry = SessionRegistry()
    ids = ["a" * 40, "b" * 40, "c" * 40]
    for content_id in ids:
        registry.upsert(content_id)
    assert [s.content_id for s in registry.list_all()] == ids
    assert registry.remove(ids[1]) is True
    assert registry.remove(ids[1]) is False
    assert [s.content_id for s in registry.list_all()] == [ids[0], ids[2]]


def test_snapshot_shape():
    """Test the snapshot carries derived fields."""
    registry = SessionRegistry()
    registry.upsert(CID, _set_files(100))
    snap = registry.get(CID).to_snapshot()
    assert snap["content_id"] == CID
    assert snap["lifecycle_state"] == "metadata_ready"
    assert snap["display_name"] == METADATA_PLACEHOLDER
    assert snap["progress"] == 0.0
    assert snap["done"] is False
    assert snap["files"][0]["length"] == 100
