"""In-memory session registry.

The registry is the single authority for session state. Every change goes
through :meth:`SessionRegistry.upsert`, which applies a mutator to a private
copy, enforces the session invariants and swaps the stored object in one
assignment. Readers always see either the old or the new session, never a
partially mutated one.
"""

from __future__ import annotations

from typing import Callable

from tordirect.models import LifecycleState, Session
from tordirect.utils.logging_config import get_logger

logger = get_logger(__name__)

Mutator = Callable[[Session], None]


def _file_layout(session: Session) -> list[tuple[int, str, int]]:
    return [(f.index, f.relative_path, f.length) for f in session.files]


class SessionRegistry:
    """Table of sessions keyed by content id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def __contains__(self, content_id: object) -> bool:
        return content_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, content_id: str) -> Session | None:
        return self._sessions.get(content_id)

    def list_all(self) -> list[Session]:
        """Return sessions in insertion order."""
        return list(self._sessions.values())

    def remove(self, content_id: str) -> bool:
        """Drop a session. Returns False if it was not registered."""
        return self._sessions.pop(content_id, None) is not None

    def upsert(self, content_id: str, mutator: Mutator | None = None) -> Session:
        """Create or update a session.

        Args:
            content_id: Session key
            mutator: Callable applied to a copy of the current session, or to
                a fresh session in the Added state

        Returns:
            The stored session after invariants are applied

        Raises:
            ValueError: If the mutator tries to mark the session Removed

        """
        existing = self._sessions.get(content_id)
        draft = (
            existing.model_copy(deep=True)
            if existing is not None
            else Session(content_id=content_id)
        )
        if mutator is not None:
            mutator(draft)

        if draft.content_id != content_id:
            msg = "content_id cannot be changed"
            raise ValueError(msg)
        if draft.lifecycle_state == LifecycleState.REMOVED:
            msg = "Removed cannot be set through upsert; use remove()"
            raise ValueError(msg)

        self._apply_invariants(existing, draft)

        draft.revision = (existing.revision if existing is not None else 0) + 1
        self._sessions[content_id] = draft
        return draft

    def _apply_invariants(self, existing: Session | None, draft: Session) -> None:
        if existing is not None and existing.files:
            if not draft.files:
                draft.files = existing.model_copy(deep=True).files
            elif _file_layout(draft) != _file_layout(existing):
                logger.debug(
                    "Ignoring file layout change for %s", draft.content_id
                )
                progress = {f.index: f.downloaded_bytes for f in draft.files}
                draft.files = existing.model_copy(deep=True).files
                for entry in draft.files:
                    entry.downloaded_bytes = progress.get(
                        entry.index, entry.downloaded_bytes
                    )

        if draft.files:
            if draft.lifecycle_state == LifecycleState.ADDED:
                draft.lifecycle_state = LifecycleState.METADATA_READY
            if draft.total_length == 0:
                draft.total_length = sum(f.length for f in draft.files)
            for entry in draft.files:
                entry.downloaded_bytes = min(entry.downloaded_bytes, entry.length)
        elif draft.lifecycle_state != LifecycleState.ADDED:
            draft.lifecycle_state = LifecycleState.ADDED

        if existing is not None and (
            draft.lifecycle_state.rank < existing.lifecycle_state.rank
        ):
            draft.lifecycle_state = existing.lifecycle_state

        if draft.total_length > 0:
            draft.downloaded_bytes = min(draft.downloaded_bytes, draft.total_length)
