"""Top-level namespace for the Kanthink service packages.

Importing ``packages`` loads the nearest ``.env`` file so that settings
objects built afterwards (``WorkspaceSettings.from_env``) see the values.
"""

from __future__ import annotations

from .env import load_env

load_env()

__all__ = ["load_env"]
