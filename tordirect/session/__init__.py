"""Session lifecycle: registry, persistent log, content source contract."""

from __future__ import annotations
