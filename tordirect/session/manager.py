"""Session manager.

Orchestrates the content source, the session registry, the broadcast
channel and the persistent log. All registry mutations happen on the
dispatcher loop captured by :meth:`SessionManager.start`; source callbacks
arriving from other threads are marshalled onto it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from tordirect.core.descriptor import ContentDescriptor, parse_descriptor
from tordirect.gateway.broadcast import BroadcastChannel
from tordirect.models import Config, FileEntry, LifecycleState, Session
from tordirect.session.persistence import PersistentLog
from tordirect.session.registry import SessionRegistry
from tordirect.session.source import ContentHandle, ContentSource, SourceFile
from tordirect.utils.exceptions import (
    AlreadyExistsError,
    PersistenceWriteFailedError,
    SessionNotFoundError,
    SourceStartFailedError,
    StorageUnavailableError,
    TorDirectError,
)
from tordirect.utils.logging_config import LoggingContext, get_logger, log_exception

logger = get_logger(__name__)

WRITE_PROBE_NAME = ".write_test"


@dataclass
class AddResult:
    """Outcome of :meth:`SessionManager.add_content`."""

    session: Session
    already_present: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def content_id(self) -> str:
        return self.session.content_id


@dataclass
class RemoveResult:
    """Outcome of :meth:`SessionManager.remove_content`."""

    content_id: str
    warnings: list[str] = field(default_factory=list)


def _estimate_remaining(session: Session) -> float | None:
    if session.lifecycle_state == LifecycleState.DONE:
        return 0.0
    if session.total_length <= 0 or session.download_rate <= 0:
        return None
    remaining = max(0, session.total_length - session.downloaded_bytes)
    return remaining / session.download_rate


def _file_entries(files: list[SourceFile]) -> list[FileEntry]:
    return [
        FileEntry(
            index=index,
            relative_path=f.path,
            name=f.display_name,
            length=f.length,
        )
        for index, f in enumerate(files)
    ]


class SessionManager:
    """Add, remove and track content sessions."""

    def __init__(
        self,
        config: Config,
        source: ContentSource,
        registry: SessionRegistry | None = None,
        broadcast: BroadcastChannel | None = None,
        persistent_log: PersistentLog | None = None,
    ):
        """Initialize the manager.

        Args:
            config: Application configuration
            source: Content source used to run transfers
            registry: Session registry, created if omitted
            broadcast: Broadcast channel, created if omitted
            persistent_log: Descriptor log, defaults to the one in the storage root

        """
        self.config = config
        self.source = source
        self.registry = registry or SessionRegistry()
        self.broadcast = broadcast or BroadcastChannel(
            self.registry,
            throttle_window=config.broadcast.throttle_window,
            observer_queue_size=config.broadcast.observer_queue_size,
        )
        self.storage_root = Path(config.storage.root).expanduser()
        self.persistent_log = persistent_log or PersistentLog(
            self.storage_root / config.storage.log_file_name
        )

        self._handles: dict[str, ContentHandle] = {}
        self._content_locks: dict[str, asyncio.Lock] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False

        self.source.bind(self)

    # Lifecycle

    async def start(self) -> None:
        """Verify the storage root and replay the persistent log.

        Raises:
            StorageUnavailableError: If the storage root is missing or not writable

        """
        self._loop = asyncio.get_running_loop()
        await self._verify_storage()
        self._started = True
        await self._replay()

    async def stop(self) -> None:
        """Stop every transfer. The persistent log is left untouched."""
        for content_id, handle in list(self._handles.items()):
            try:
                await self.source.stop(handle)
            except Exception as e:
                log_exception(logger, e, f"Error stopping transfer {content_id}")
        self._handles.clear()
        self._content_locks.clear()
        await self.broadcast.close()
        await self.source.close()
        self._started = False
        logger.info("Session manager stopped")

    async def _verify_storage(self) -> None:
        root = self.storage_root

        def probe() -> None:
            if not root.is_dir():
                msg = f"Storage root does not exist: {root}"
                raise StorageUnavailableError(msg, {"root": str(root)})
            probe_path = root / WRITE_PROBE_NAME
            probe_path.write_text("test", encoding="utf-8")
            probe_path.unlink()

        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, probe),
                timeout=self.config.storage.probe_timeout,
            )
        except asyncio.TimeoutError as e:
            msg = f"Storage probe timed out after {self.config.storage.probe_timeout}s"
            raise StorageUnavailableError(msg, {"root": str(root)}) from e
        except OSError as e:
            msg = f"Storage root is not writable: {root}"
            raise StorageUnavailableError(msg, {"root": str(root), "error": str(e)}) from e

        logger.info("Storage root %s is writable", root)

    async def _replay(self) -> None:
        with LoggingContext("log_replay", path=str(self.persistent_log.path)):
            descriptors = await self.persistent_log.load()
            restored = 0
            for descriptor in descriptors:
                try:
                    await self._add(descriptor, strict=False, persist=False)
                    restored += 1
                except TorDirectError as e:
                    log_exception(
                        logger, e, f"Could not restore {descriptor.content_id}"
                    )
            logger.info(
                "Restored %d of %d saved sessions", restored, len(descriptors)
            )

    # Operations

    async def add_content(self, descriptor: str, strict: bool = False) -> AddResult:
        """Add content and start transferring it.

        Args:
            descriptor: Magnet URI or bare info hash
            strict: Raise instead of reporting an already present session

        Raises:
            InvalidDescriptorError: If the descriptor cannot be parsed
            AlreadyExistsError: If ``strict`` and the session exists
            SourceStartFailedError: If the source cannot start the transfer

        """
        parsed = parse_descriptor(descriptor)
        return await self._add(parsed, strict=strict, persist=True)

    def _content_lock(self, content_id: str) -> asyncio.Lock:
        """Lock serializing add and remove of one content id."""
        lock = self._content_locks.get(content_id)
        if lock is None:
            lock = self._content_locks[content_id] = asyncio.Lock()
        return lock

    async def _add(
        self,
        descriptor: ContentDescriptor,
        strict: bool,
        persist: bool,
    ) -> AddResult:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        content_id = descriptor.content_id

        async with self._content_lock(content_id):
            existing = self.registry.get(content_id)
            if existing is not None:
                if strict:
                    msg = f"Content {content_id} is already present"
                    raise AlreadyExistsError(msg, {"content_id": content_id})
                logger.debug("Content %s already present", content_id)
                return AddResult(session=existing, already_present=True)

            with LoggingContext("content_add", content_id=content_id):
                try:
                    handle = await self.source.start(descriptor)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    msg = f"Content source failed to start {content_id}: {e}"
                    raise SourceStartFailedError(
                        msg, {"content_id": content_id}
                    ) from e

                self._handles[content_id] = handle

                def register(session: Session) -> None:
                    session.descriptor = descriptor.uri
                    if handle.files:
                        session.display_name = handle.name
                        session.files = _file_entries(handle.files)
                        session.total_length = sum(f.length for f in handle.files)

                session = self.registry.upsert(content_id, register)
                self.broadcast.publish(content_id)

            warnings: list[str] = []
            if persist:
                try:
                    await self.persistent_log.append(descriptor)
                except PersistenceWriteFailedError as e:
                    logger.warning(
                        "Session %s added but not persisted: %s", content_id, e
                    )
                    warnings.append(e.message)

        return AddResult(session=session, warnings=warnings)

    async def remove_content(self, content_id: str) -> RemoveResult:
        """Stop and forget a session, and drop it from the persistent log.

        An add of the same content issued while the removal is in progress
        waits for it and then starts a fresh session.

        Raises:
            SessionNotFoundError: If no session exists for ``content_id``

        """
        content_id = content_id.lower()
        msg = f"No session for {content_id}"
        if content_id not in self._content_locks:
            raise SessionNotFoundError(msg, {"content_id": content_id})

        warnings: list[str] = []
        async with self._content_lock(content_id):
            if content_id not in self.registry:
                raise SessionNotFoundError(msg, {"content_id": content_id})

            with LoggingContext("content_remove", content_id=content_id):
                handle = self._handles.pop(content_id, None)
                if handle is not None:
                    try:
                        await self.source.stop(handle)
                    except Exception as e:
                        log_exception(
                            logger, e, f"Error stopping transfer {content_id}"
                        )

                self.registry.remove(content_id)
                self.broadcast.publish(content_id)

                try:
                    await self.persistent_log.remove(content_id)
                except PersistenceWriteFailedError as e:
                    logger.warning(
                        "Session %s removed but log not compacted: %s", content_id, e
                    )
                    warnings.append(e.message)

        return RemoveResult(content_id=content_id, warnings=warnings)

    def list_sessions(self) -> list[Session]:
        return self.registry.list_all()

    def get_session(self, content_id: str) -> Session | None:
        return self.registry.get(content_id.lower())

    def get_handle(self, content_id: str) -> ContentHandle | None:
        return self._handles.get(content_id.lower())

    # Source listener

    def _dispatch(self, func: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Dropping source event, dispatcher not running")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            func(*args)
        else:
            loop.call_soon_threadsafe(func, *args)

    def _update(self, content_id: str, mutator: Callable[[Session], None]) -> None:
        if content_id not in self.registry:
            logger.debug("Dropping event for unknown session %s", content_id)
            return
        self.registry.upsert(content_id, mutator)
        self.broadcast.publish(content_id)

    def on_metadata(self, content_id: str, name: str, files: list[SourceFile]) -> None:
        def apply(session: Session) -> None:
            session.display_name = name
            session.files = _file_entries(files)
            session.total_length = sum(f.length for f in files)

        logger.info("Metadata ready for %s: %s (%d files)", content_id, name, len(files))
        self._dispatch(self._update, content_id, apply)

    def on_progress(
        self,
        content_id: str,
        downloaded: int,
        uploaded: int,
        rate_down: float,
        rate_up: float,
        peers: int,
        file_progress: list[int] | None = None,
    ) -> None:
        def apply(session: Session) -> None:
            session.downloaded_bytes = max(0, downloaded)
            session.uploaded_bytes = max(0, uploaded)
            session.download_rate = max(0.0, rate_down)
            session.upload_rate = max(0.0, rate_up)
            session.peer_count = max(0, peers)
            if file_progress is not None:
                for entry, value in zip(session.files, file_progress):
                    entry.downloaded_bytes = max(0, value)
            if session.lifecycle_state == LifecycleState.METADATA_READY:
                session.lifecycle_state = LifecycleState.DOWNLOADING
            session.estimated_time_remaining = _estimate_remaining(session)

        self._dispatch(self._update, content_id, apply)

    def on_done(self, content_id: str) -> None:
        def apply(session: Session) -> None:
            session.lifecycle_state = LifecycleState.DONE
            session.downloaded_bytes = session.total_length
            session.download_rate = 0.0
            for entry in session.files:
                entry.downloaded_bytes = entry.length
            session.estimated_time_remaining = 0.0

        logger.info("Transfer %s done", content_id)
        self._dispatch(self._update, content_id, apply)

    def on_warning(self, content_id: str, message: str) -> None:
        logger.warning("Transfer %s: %s", content_id, message)

    def on_error(self, content_id: str, error: BaseException | str) -> None:
        message = str(error) or error.__class__.__name__

        def apply(session: Session) -> None:
            session.error.present = True
            session.error.message = message

        logger.error("Transfer %s failed: %s", content_id, message)
        self._dispatch(self._update, content_id, apply)
