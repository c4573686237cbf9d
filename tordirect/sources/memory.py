"""In-process content source.

Serves content registered up front from memory. Useful for development
and as the source behind the test suite: metadata is announced on the next
loop iteration after ``start``, and progress, completion and errors are
driven explicitly through the ``emit_*`` helpers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator

from tordirect.core.descriptor import ContentDescriptor
from tordirect.session.source import ContentHandle, SourceFile, SourceListener
from tordirect.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class MemoryContent:
    """Content known to a :class:`MemoryContentSource`."""

    name: str
    files: list[tuple[str, bytes]] = field(default_factory=list)

    @property
    def source_files(self) -> list[SourceFile]:
        return [SourceFile(path=path, length=len(data)) for path, data in self.files]

    @property
    def total_length(self) -> int:
        return sum(len(data) for _, data in self.files)


class MemoryContentSource:
    """Content source backed by byte strings."""

    def __init__(
        self,
        chunk_size: int = 16 * 1024,
        announce_metadata: bool = True,
        metadata_delay: float = 0.0,
    ):
        """Initialize the source.

        Args:
            chunk_size: Size of the chunks yielded by ``read_range``
            announce_metadata: Emit metadata automatically after ``start``
            metadata_delay: Seconds to wait before announcing metadata

        """
        self.chunk_size = chunk_size
        self.announce_metadata = announce_metadata
        self.metadata_delay = metadata_delay

        self._listener: SourceListener | None = None
        self._contents: dict[str, MemoryContent] = {}
        self._active: dict[str, ContentHandle] = {}
        self._refuse: dict[str, str] = {}
        self._read_failures: dict[tuple[str, int], int] = {}
        self._timers: list[asyncio.TimerHandle] = []
        self.started: list[str] = []
        self.stopped: list[str] = []

    # Test and development helpers

    def register(
        self,
        content_id: str,
        name: str,
        files: dict[str, bytes] | list[tuple[str, bytes]],
    ) -> MemoryContent:
        """Make content available under ``content_id``."""
        items = list(files.items()) if isinstance(files, dict) else list(files)
        content = MemoryContent(name=name, files=items)
        self._contents[content_id.lower()] = content
        return content

    def refuse(self, content_id: str, reason: str = "refused") -> None:
        """Make ``start`` fail for ``content_id``."""
        self._refuse[content_id.lower()] = reason

    def fail_reads(self, content_id: str, file_index: int, after: int = 0) -> None:
        """Make reads of a file fail once ``after`` bytes have been yielded."""
        self._read_failures[(content_id.lower(), file_index)] = after

    def is_active(self, content_id: str) -> bool:
        return content_id.lower() in self._active

    def emit_metadata(self, content_id: str) -> None:
        content = self._contents.get(content_id)
        if self._listener is None or content is None or content_id not in self._active:
            return
        self._listener.on_metadata(content_id, content.name, content.source_files)

    def emit_progress(
        self,
        content_id: str,
        downloaded: int,
        uploaded: int = 0,
        rate_down: float = 0.0,
        rate_up: float = 0.0,
        peers: int = 0,
        file_progress: list[int] | None = None,
    ) -> None:
        if self._listener is not None:
            self._listener.on_progress(
                content_id, downloaded, uploaded, rate_down, rate_up, peers, file_progress
            )

    def emit_done(self, content_id: str) -> None:
        if self._listener is not None:
            self._listener.on_done(content_id)

    def emit_warning(self, content_id: str, message: str) -> None:
        if self._listener is not None:
            self._listener.on_warning(content_id, message)

    def emit_error(self, content_id: str, error: BaseException | str) -> None:
        if self._listener is not None:
            self._listener.on_error(content_id, error)

    # ContentSource

    def bind(self, listener: SourceListener) -> None:
        self._listener = listener

    async def start(self, descriptor: ContentDescriptor) -> ContentHandle:
        content_id = descriptor.content_id
        if content_id in self._refuse:
            raise RuntimeError(self._refuse[content_id])

        handle = ContentHandle(
            content_id=content_id,
            descriptor=descriptor,
            name=descriptor.display_name,
        )
        self._active[content_id] = handle
        self.started.append(content_id)

        if self.announce_metadata and content_id in self._contents:
            loop = asyncio.get_running_loop()
            self._timers.append(
                loop.call_later(self.metadata_delay, self.emit_metadata, content_id)
            )
        logger.debug("Started in-memory transfer %s", content_id)
        return handle

    async def stop(self, handle: ContentHandle) -> None:
        if self._active.pop(handle.content_id, None) is not None:
            self.stopped.append(handle.content_id)
            logger.debug("Stopped in-memory transfer %s", handle.content_id)

    async def read_range(
        self,
        handle: ContentHandle,
        file_index: int,
        start: int,
        end: int | None = None,
    ) -> AsyncIterator[bytes]:
        content = self._contents.get(handle.content_id)
        if content is None or file_index >= len(content.files):
            msg = f"No data for {handle.content_id} file {file_index}"
            raise OSError(msg)

        data = content.files[file_index][1]
        stop = len(data) if end is None else min(end + 1, len(data))
        fail_after = self._read_failures.get((handle.content_id, file_index))
        yielded = 0
        offset = start
        while offset < stop:
            if handle.content_id not in self._active:
                msg = f"Transfer {handle.content_id} was stopped"
                raise OSError(msg)
            if fail_after is not None and yielded >= fail_after:
                msg = f"Read failed at offset {offset}"
                raise OSError(msg)
            chunk = data[offset : min(offset + self.chunk_size, stop)]
            offset += len(chunk)
            yielded += len(chunk)
            yield chunk
            await asyncio.sleep(0)

    async def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self._active.clear()
