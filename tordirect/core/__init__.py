"""Content descriptor parsing."""

from __future__ import annotations

from tordirect.core.descriptor import (
    ContentDescriptor,
    parse_descriptor,
    try_parse_descriptor,
)

__all__ = [
    "ContentDescriptor",
    "parse_descriptor",
    "try_parse_descriptor",
]
