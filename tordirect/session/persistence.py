"""Persistent log of content descriptors.

The log is a plain text file with one descriptor per line. Lines are only
appended, except on explicit removal where the file is compacted and
rewritten atomically. Lines that do not parse as a descriptor (including
``#`` comments) are kept verbatim by compaction and never match an id.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

from tordirect.core.descriptor import ContentDescriptor, try_parse_descriptor
from tordirect.utils.exceptions import PersistenceWriteFailedError, StorageError
from tordirect.utils.logging_config import get_logger

logger = get_logger(__name__)

ENCODING = "utf-8"
# Round-trips bytes that are not valid UTF-8 through compaction unchanged.
ERRORS = "surrogateescape"


@dataclass(frozen=True)
class LogLine:
    """One line of the persistent log."""

    raw: str
    descriptor: ContentDescriptor | None

    @property
    def content_id(self) -> str | None:
        return self.descriptor.content_id if self.descriptor else None


def _parse_line(raw: str) -> LogLine:
    text = raw.strip()
    if not text or text.startswith("#"):
        return LogLine(raw, None)
    try:
        text.encode(ENCODING)
    except UnicodeEncodeError:
        # Undecodable bytes, carried as surrogates.
        return LogLine(raw, None)
    return LogLine(raw, try_parse_descriptor(text))


class PersistentLog:
    """Durable record of descriptors that should be active across restarts."""

    def __init__(self, path: str | Path):
        """Initialize the log.

        Args:
            path: Log file location. The file is created on first append.

        """
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read_lines(self) -> list[LogLine]:
        try:
            with open(self.path, encoding=ENCODING, errors=ERRORS) as f:
                text = f.read()
        except FileNotFoundError:
            return []
        return [_parse_line(raw) for raw in text.splitlines()]

    def _append_line(self, line: str) -> None:
        needs_newline = False
        if self.path.exists() and self.path.stat().st_size > 0:
            with open(self.path, "rb") as f:
                f.seek(-1, os.SEEK_END)
                needs_newline = f.read(1) != b"\n"
        with open(self.path, "a", encoding=ENCODING, errors=ERRORS) as f:
            if needs_newline:
                f.write("\n")
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _rewrite(self, lines: list[str]) -> None:
        temp_file = self.path.with_name(self.path.name + ".tmp")
        with open(temp_file, "w", encoding=ENCODING, errors=ERRORS) as f:
            f.write("".join(line + "\n" for line in lines))
            f.flush()
            os.fsync(f.fileno())
        temp_file.replace(self.path)

    async def load(self) -> list[ContentDescriptor]:
        """Return the distinct descriptors in file order.

        Raises:
            StorageError: If the file exists but cannot be read

        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            try:
                lines = await loop.run_in_executor(None, self._read_lines)
            except OSError as e:
                msg = f"Cannot read persistent log {self.path}: {e}"
                raise StorageError(msg, {"path": str(self.path)}) from e

        seen: set[str] = set()
        descriptors: list[ContentDescriptor] = []
        for number, line in enumerate(lines, start=1):
            if line.descriptor is None:
                if line.raw.strip() and not line.raw.strip().startswith("#"):
                    logger.warning(
                        "Ignoring unparsable line %d in %s", number, self.path
                    )
                continue
            if line.descriptor.content_id in seen:
                continue
            seen.add(line.descriptor.content_id)
            descriptors.append(line.descriptor)
        return descriptors

    async def append(self, descriptor: ContentDescriptor) -> bool:
        """Append a descriptor unless an entry with the same id exists.

        Returns:
            True if a line was written

        Raises:
            PersistenceWriteFailedError: If the file cannot be written

        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            try:
                lines = await loop.run_in_executor(None, self._read_lines)
                if any(line.content_id == descriptor.content_id for line in lines):
                    logger.debug(
                        "Descriptor %s already in persistent log",
                        descriptor.content_id,
                    )
                    return False
                await loop.run_in_executor(None, self._append_line, descriptor.uri)
            except OSError as e:
                msg = f"Cannot append to persistent log {self.path}: {e}"
                raise PersistenceWriteFailedError(
                    msg, {"content_id": descriptor.content_id}
                ) from e

        logger.debug("Appended %s to persistent log", descriptor.content_id)
        return True

    async def remove(self, content_id: str) -> bool:
        """Compact the log, dropping every entry for ``content_id``.

        Blank lines are dropped, unparsable lines are preserved.

        Returns:
            True if at least one entry was removed

        Raises:
            PersistenceWriteFailedError: If the file cannot be rewritten

        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            try:
                lines = await loop.run_in_executor(None, self._read_lines)
                kept = [
                    line.raw
                    for line in lines
                    if line.raw.strip() and line.content_id != content_id
                ]
                removed = len(kept) != len([line for line in lines if line.raw.strip()])
                if not removed:
                    return False
                await loop.run_in_executor(None, self._rewrite, kept)
            except OSError as e:
                msg = f"Cannot compact persistent log {self.path}: {e}"
                raise PersistenceWriteFailedError(
                    msg, {"content_id": content_id}
                ) from e

        logger.debug("Removed %s from persistent log", content_id)
        return True
