"""Command-line tools for running and administering the Kanthink service."""

from __future__ import annotations

from .runner import build_parser, main

__all__ = ["build_parser", "main"]
