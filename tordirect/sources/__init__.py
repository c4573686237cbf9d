"""Content source implementations."""

from __future__ import annotations
