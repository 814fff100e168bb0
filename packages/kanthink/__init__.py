"""Kanthink: LLM-assisted Kanban boards organized into shared folders."""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
