"""Shared utilities: exceptions and logging."""

from __future__ import annotations
