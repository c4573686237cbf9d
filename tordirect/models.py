"""Pydantic models for tordirect.

Provides the configuration models and the session data model shared by the
registry, the gateway and the API layer.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

METADATA_PLACEHOLDER = "Fetching metadata..."


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LifecycleState(str, Enum):
    """Session lifecycle states, in the only order they may be entered."""

    ADDED = "added"
    METADATA_READY = "metadata_ready"
    DOWNLOADING = "downloading"
    DONE = "done"
    REMOVED = "removed"

    @property
    def rank(self) -> int:
        """Position of the state in the lifecycle."""
        return _LIFECYCLE_ORDER.index(self)

    def at_least(self, other: LifecycleState) -> bool:
        """Return True if this state is ``other`` or later."""
        return self.rank >= other.rank


_LIFECYCLE_ORDER = list(LifecycleState)


class FileEntry(BaseModel):
    """A single file inside a content transfer."""

    index: int = Field(..., ge=0, description="Stable file index")
    relative_path: str = Field(..., description="Path relative to the content root")
    name: str = Field(..., description="File name")
    length: int = Field(..., ge=0, description="File length in bytes")
    downloaded_bytes: int = Field(0, ge=0, description="Bytes downloaded so far")


class SessionError(BaseModel):
    """Error state attached to a session, orthogonal to its lifecycle."""

    present: bool = Field(False, description="Whether the session is in error")
    message: str | None = Field(None, description="Last error message")


class Session(BaseModel):
    """State of one active content transfer."""

    content_id: str = Field(..., description="Lowercase hex info hash")
    descriptor: str = Field("", description="Normalized descriptor")
    display_name: str | None = Field(None, description="Name from metadata")
    files: list[FileEntry] = Field(default_factory=list, description="File list")
    total_length: int = Field(0, ge=0, description="Total length in bytes")
    downloaded_bytes: int = Field(0, ge=0, description="Bytes downloaded")
    uploaded_bytes: int = Field(0, ge=0, description="Bytes uploaded")
    download_rate: float = Field(0.0, ge=0.0, description="Download rate (B/s)")
    upload_rate: float = Field(0.0, ge=0.0, description="Upload rate (B/s)")
    peer_count: int = Field(0, ge=0, description="Connected peers")
    estimated_time_remaining: float | None = Field(
        None,
        description="Seconds remaining, None when unknown",
    )
    lifecycle_state: LifecycleState = Field(
        LifecycleState.ADDED,
        description="Lifecycle state",
    )
    error: SessionError = Field(default_factory=SessionError)
    added_at: float = Field(default_factory=time.time, description="Add timestamp")
    revision: int = Field(0, ge=0, description="Bumped on every registry upsert")

    @property
    def progress(self) -> float:
        """Fraction of the content downloaded, 0.0 to 1.0."""
        if self.lifecycle_state == LifecycleState.DONE:
            return 1.0
        if self.total_length <= 0:
            return 0.0
        return min(1.0, self.downloaded_bytes / self.total_length)

    @property
    def name(self) -> str:
        """Display name, or the placeholder while metadata is pending."""
        return self.display_name or METADATA_PLACEHOLDER

    def to_snapshot(self) -> dict[str, Any]:
        """Serialize the session for observers and the HTTP API."""
        data = self.model_dump(mode="json")
        data["display_name"] = self.name
        data["progress"] = self.progress
        data["done"] = self.lifecycle_state == LifecycleState.DONE
        return data


class StorageConfig(BaseModel):
    """Storage root and persistent log configuration."""

    root: str = Field(
        default="./downloads",
        description="Directory holding downloads and the persistent log",
    )
    log_file_name: str = Field(
        default=".saved_torrents.txt",
        description="Persistent log file name inside the storage root",
    )
    probe_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=300.0,
        description="Timeout in seconds for the storage write probe",
    )

    @field_validator("log_file_name")
    @classmethod
    def validate_log_file_name(cls, v: str) -> str:
        """Validate that the log file name is a bare file name."""
        if not v or "/" in v or "\\" in v:
            msg = f"log_file_name must be a plain file name, got {v!r}"
            raise ValueError(msg)
        return v


class GatewayConfig(BaseModel):
    """HTTP gateway configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, ge=1, le=65535, description="Listen port")
    websocket_heartbeat_interval: float = Field(
        default=15.0,
        ge=1.0,
        description="WebSocket heartbeat interval in seconds",
    )
    stream_chunk_size: int = Field(
        default=64 * 1024,
        ge=1024,
        le=16 * 1024 * 1024,
        description="Largest single write to the client when streaming a file",
    )


class BroadcastConfig(BaseModel):
    """Observer fan-out configuration."""

    throttle_window: float = Field(
        default=0.5,
        ge=0.0,
        le=60.0,
        description="Per-session delta throttle window in seconds",
    )
    observer_queue_size: int = Field(
        default=1000,
        ge=10,
        le=100000,
        description="Maximum queued messages per observer before it is dropped",
    )


class SourceConfig(BaseModel):
    """Content source selection."""

    factory: str = Field(
        default="tordirect.sources.memory:MemoryContentSource",
        description="Content source factory as 'module:attribute'",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Keyword arguments passed to the factory",
    )

    @field_validator("factory")
    @classmethod
    def validate_factory(cls, v: str) -> str:
        """Validate the 'module:attribute' form."""
        module, sep, attr = v.partition(":")
        if not sep or not module or not attr:
            msg = f"factory must look like 'module:attribute', got {v!r}"
            raise ValueError(msg)
        return v


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Use structured JSON logging",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration model."""

    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Storage configuration",
    )
    gateway: GatewayConfig = Field(
        default_factory=GatewayConfig,
        description="HTTP gateway configuration",
    )
    broadcast: BroadcastConfig = Field(
        default_factory=BroadcastConfig,
        description="Broadcast configuration",
    )
    source: SourceConfig = Field(
        default_factory=SourceConfig,
        description="Content source configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
