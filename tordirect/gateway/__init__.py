"""HTTP gateway: REST API, range streaming and WebSocket push."""

from __future__ import annotations
