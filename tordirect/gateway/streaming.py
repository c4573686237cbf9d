"""HTTP range streaming of session files.

Translates a GET against ``(content_id, file_index)`` into a read from the
content source and writes the bytes to an aiohttp ``StreamResponse`` with
correct single-range semantics. Data that the source has not fetched yet is
waited for by the source's iterator; it is never synthesized here.
"""

from __future__ import annotations

import asyncio
import re
import urllib.parse
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, AsyncIterator

from aiohttp import hdrs, web

from tordirect.gateway.protocol import ErrorResponse
from tordirect.models import FileEntry, LifecycleState
from tordirect.utils.exceptions import (
    FileIndexOutOfRangeError,
    MalformedRangeError,
    MetadataNotReadyError,
    RangeNotSatisfiableError,
    SessionNotFoundError,
    StreamIOError,
)
from tordirect.utils.logging_config import get_logger, log_exception

if TYPE_CHECKING:  # pragma: no cover
    from tordirect.session.manager import SessionManager
    from tordirect.session.source import ContentHandle

logger = get_logger(__name__)

DEFAULT_MEDIA_TYPE = "application/octet-stream"

MEDIA_TYPES: dict[str, str] = {
    # Video
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".mpg": "video/mpeg",
    ".mpeg": "video/mpeg",
    ".ts": "video/mp2t",
    ".ogv": "video/ogg",
    # Audio
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".opus": "audio/opus",
    ".wav": "audio/wav",
    # Subtitles and text
    ".srt": "application/x-subrip",
    ".vtt": "text/vtt",
    ".txt": "text/plain",
    ".nfo": "text/plain",
    ".html": "text/html",
    ".json": "application/json",
    # Images
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    # Archives and documents
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".epub": "application/epub+zip",
}

_DIGITS = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range inside a file."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def media_type_for(name: str) -> str:
    """Return the media type for a file name, by extension."""
    return MEDIA_TYPES.get(PurePosixPath(name).suffix.lower(), DEFAULT_MEDIA_TYPE)


def parse_range(header: str | None, length: int) -> ByteRange | None:
    """Parse a single ``bytes=START-END`` range against a file length.

    Args:
        header: Raw Range header value, or None
        length: File length in bytes

    Returns:
        The satisfiable range with END clamped to ``length - 1``, or None
        when no Range header was sent

    Raises:
        MalformedRangeError: If the header is not a single ``bytes=`` range
            with a numeric START
        RangeNotSatisfiableError: If START is past the end of the file or
            END is before START

    """
    if header is None:
        return None

    value = header.strip()
    unit, sep, ranges = value.partition("=")
    if not sep or unit.strip().lower() != "bytes":
        msg = "Malformed Range header"
        raise MalformedRangeError(msg, {"range": header})
    if "," in ranges:
        msg = "Malformed Range header"
        raise MalformedRangeError(msg, {"range": header, "reason": "multiple ranges"})

    start_text, dash, end_text = ranges.strip().partition("-")
    start_text = start_text.strip()
    end_text = end_text.strip()
    if (
        not dash
        or not _DIGITS.fullmatch(start_text)
        or (end_text and not _DIGITS.fullmatch(end_text))
    ):
        msg = "Malformed Range header"
        raise MalformedRangeError(msg, {"range": header})

    start = int(start_text)
    end = int(end_text) if end_text else length - 1
    if start >= length or end < start:
        msg = "Range Not Satisfiable"
        raise RangeNotSatisfiableError(msg, length, {"range": header})

    return ByteRange(start, min(end, length - 1))


def content_disposition(name: str) -> str:
    """Attachment disposition with an RFC 5987 encoded file name."""
    return f"attachment; filename*=UTF-8''{urllib.parse.quote(name, safe='')}"


class StreamingGateway:
    """Serves inline streams and attachment downloads of session files."""

    def __init__(self, manager: SessionManager, chunk_size: int = 64 * 1024):
        """Initialize the gateway.

        Args:
            manager: Session manager owning the transfers
            chunk_size: Source chunks larger than this are split across writes

        """
        self.manager = manager
        self.chunk_size = chunk_size

    def resolve(
        self, content_id: str, file_index: str | int
    ) -> tuple[FileEntry, ContentHandle]:
        """Check preconditions in order and return the file and transfer.

        Raises:
            SessionNotFoundError: Unknown session
            MetadataNotReadyError: Session has no file list yet
            FileIndexOutOfRangeError: Index is not an integer in range

        """
        session = self.manager.get_session(content_id)
        if session is None:
            msg = "Torrent not found"
            raise SessionNotFoundError(msg, {"content_id": content_id})

        if (
            not session.lifecycle_state.at_least(LifecycleState.METADATA_READY)
            or not session.files
        ):
            msg = "Torrent metadata not ready yet, cannot access files"
            raise MetadataNotReadyError(msg, {"content_id": session.content_id})

        raw_index = str(file_index).strip()
        if not _DIGITS.fullmatch(raw_index) or int(raw_index) >= len(session.files):
            msg = "File index out of bounds"
            raise FileIndexOutOfRangeError(
                msg,
                {"content_id": session.content_id, "file_index": raw_index},
            )

        handle = self.manager.get_handle(session.content_id)
        if handle is None:
            msg = "Torrent not found"
            raise SessionNotFoundError(msg, {"content_id": session.content_id})

        return session.files[int(raw_index)], handle

    async def serve(
        self,
        request: web.Request,
        content_id: str,
        file_index: str | int,
        attachment: bool = False,
    ) -> web.StreamResponse:
        """Serve a file, honoring a single byte range if requested."""
        entry, handle = self.resolve(content_id, file_index)
        length = entry.length

        try:
            byte_range = parse_range(request.headers.get(hdrs.RANGE), length)
        except RangeNotSatisfiableError:
            logger.debug(
                "Unsatisfiable range %s for %s (size %d)",
                request.headers.get(hdrs.RANGE),
                entry.name,
                length,
            )
            return web.Response(
                status=web.HTTPRequestRangeNotSatisfiable.status_code,
                headers={hdrs.CONTENT_RANGE: f"bytes */{length}"},
            )

        response = web.StreamResponse()
        response.content_type = media_type_for(entry.name)
        response.headers[hdrs.ACCEPT_RANGES] = "bytes"
        if attachment:
            response.headers[hdrs.CONTENT_DISPOSITION] = content_disposition(entry.name)

        if byte_range is None:
            start, end, todo = 0, length - 1, length
        else:
            start, end, todo = byte_range.start, byte_range.end, byte_range.length
            response.set_status(web.HTTPPartialContent.status_code)
            response.headers[hdrs.CONTENT_RANGE] = f"bytes {start}-{end}/{length}"
        response.content_length = todo

        logger.debug(
            "Serving %s bytes %d-%d/%d (%s)",
            entry.name,
            start,
            end,
            length,
            "attachment" if attachment else "inline",
        )

        if todo == 0:
            await response.prepare(request)
            await response.write_eof()
            return response

        chunks: AsyncIterator[bytes] = aiter(
            self.manager.source.read_range(handle, entry.index, start, end)
        )
        try:
            try:
                first = await anext(chunks, b"")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_exception(
                    logger,
                    StreamIOError(
                        "Error reading file stream",
                        {"content_id": handle.content_id, "file": entry.name},
                    ),
                    f"Source read failed before headers: {e}",
                )
                return web.json_response(
                    ErrorResponse(
                        error="Error reading file stream",
                        code=StreamIOError.code,
                    ).model_dump(),
                    status=500,
                )

            await response.prepare(request)
            await self._pipe(request, response, chunks, first, todo, handle, entry)
            return response
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _pipe(
        self,
        request: web.Request,
        response: web.StreamResponse,
        chunks: AsyncIterator[bytes],
        first: bytes,
        todo: int,
        handle: ContentHandle,
        entry: FileEntry,
    ) -> None:
        chunk = first
        try:
            while True:
                if chunk:
                    chunk = chunk[:todo]
                    for offset in range(0, len(chunk), self.chunk_size):
                        await response.write(chunk[offset : offset + self.chunk_size])
                    todo -= len(chunk)
                if todo <= 0:
                    break
                chunk = await anext(chunks, None)
                if chunk is None:
                    msg = f"Source ended with {todo} bytes outstanding"
                    raise EOFError(msg)
        except ConnectionResetError:
            logger.debug("Client went away while streaming %s", entry.name)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(
                logger,
                StreamIOError(
                    f"Stream aborted after headers: {e}",
                    {
                        "content_id": handle.content_id,
                        "file": entry.name,
                        "remaining": todo,
                    },
                ),
                "Error while streaming",
            )
            if request.transport is not None:
                request.transport.abort()
            return

        await response.write_eof()
