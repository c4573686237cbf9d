"""Command line interface for tordirect."""

from __future__ import annotations
