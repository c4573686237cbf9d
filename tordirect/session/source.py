"""Content source interface.

A content source is the transfer engine that actually fetches bytes. The
session layer only talks to it through :class:`ContentSource`, and receives
its events through :class:`SourceListener`. Listener callbacks may be invoked
from any thread.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from tordirect.core.descriptor import ContentDescriptor
from tordirect.models import SourceConfig
from tordirect.utils.exceptions import ConfigurationError


@dataclass
class SourceFile:
    """A file as reported by the source once metadata is known."""

    path: str
    length: int
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.path.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass
class ContentHandle:
    """Reference to a running transfer, returned by ``ContentSource.start``."""

    content_id: str
    descriptor: ContentDescriptor
    name: str | None = None
    files: list[SourceFile] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class SourceListener(Protocol):
    """Receiver of transfer events."""

    def on_metadata(
        self, content_id: str, name: str, files: list[SourceFile]
    ) -> None: ...

    def on_progress(
        self,
        content_id: str,
        downloaded: int,
        uploaded: int,
        rate_down: float,
        rate_up: float,
        peers: int,
        file_progress: list[int] | None = None,
    ) -> None: ...

    def on_done(self, content_id: str) -> None: ...

    def on_warning(self, content_id: str, message: str) -> None: ...

    def on_error(self, content_id: str, error: BaseException | str) -> None: ...


@runtime_checkable
class ContentSource(Protocol):
    """Transfer engine consumed by the session manager."""

    def bind(self, listener: SourceListener) -> None: ...

    async def start(self, descriptor: ContentDescriptor) -> ContentHandle: ...

    async def stop(self, handle: ContentHandle) -> None: ...

    def read_range(
        self,
        handle: ContentHandle,
        file_index: int,
        start: int,
        end: int | None = None,
    ) -> AsyncIterator[bytes]: ...

    async def close(self) -> None: ...


def load_source_factory(path: str) -> Any:
    """Resolve a ``module:attribute`` reference.

    Raises:
        ConfigurationError: If the module or attribute cannot be found

    """
    module_name, _, attr = path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        msg = f"Cannot import content source module '{module_name}': {e}"
        raise ConfigurationError(msg, {"factory": path}) from e
    try:
        return getattr(module, attr)
    except AttributeError as e:
        msg = f"Module '{module_name}' has no attribute '{attr}'"
        raise ConfigurationError(msg, {"factory": path}) from e


def create_source(config: SourceConfig) -> ContentSource:
    """Build the content source named by the configuration."""
    factory = load_source_factory(config.factory)
    source = factory(**config.options)
    if not isinstance(source, ContentSource):
        msg = f"'{config.factory}' did not produce a content source"
        raise ConfigurationError(msg, {"factory": config.factory})
    return source
