"""HTTP and WebSocket protocol definitions for the gateway.

Defines the request, response and event models shared by the server and the
client.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

SESSIONS_PATH = "/sessions"
EVENTS_PATH = "/events"
HEALTH_PATH = "/health"


class EventType(str, Enum):
    """WebSocket event types."""

    SNAPSHOT = "snapshot"
    SESSION_UPDATED = "session_updated"
    SESSION_REMOVED = "session_removed"
    SESSION_DONE = "session_done"
    SESSION_ERROR = "session_error"


class HealthResponse(BaseModel):
    """Gateway health response."""

    status: str = Field(..., description="Gateway status")
    version: str = Field(..., description="tordirect version")
    uptime: float = Field(..., description="Uptime in seconds")
    num_sessions: int = Field(0, description="Number of active sessions")
    num_observers: int = Field(0, description="Connected WebSocket observers")


class AddContentRequest(BaseModel):
    """Request to add content."""

    descriptor: str = Field(..., description="Magnet URI or info hash")
    strict: bool = Field(False, description="Fail if the content is already present")


class AddContentResponse(BaseModel):
    """Result of an add request."""

    content_id: str = Field(..., description="Content id of the session")
    already_present: bool = Field(False, description="Session existed before")
    warnings: list[str] = Field(default_factory=list, description="Non-fatal issues")
    session: dict[str, Any] = Field(..., description="Session snapshot")


class RemoveContentResponse(BaseModel):
    """Result of a remove request."""

    content_id: str = Field(..., description="Removed content id")
    removed: bool = Field(True, description="Whether a session was removed")
    warnings: list[str] = Field(default_factory=list, description="Non-fatal issues")


class SessionListResponse(BaseModel):
    """List of sessions."""

    sessions: list[dict[str, Any]] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Error response."""

    error: str = Field(..., description="Error message")
    code: str = Field(..., description="Error code")
    details: dict[str, Any] | None = Field(None, description="Additional error details")


class WebSocketMessage(BaseModel):
    """Message sent by a WebSocket client."""

    action: str = Field(..., description="Message action")
    data: dict[str, Any] | None = Field(None, description="Message data")


class WebSocketEvent(BaseModel):
    """Event pushed to WebSocket observers."""

    type: EventType = Field(..., description="Event type")
    timestamp: float = Field(..., description="Event timestamp")
    data: dict[str, Any] = Field(default_factory=dict, description="Event data")
