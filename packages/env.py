"""Helpers for loading `.env` files for the Kanthink service."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Union

from dotenv import find_dotenv, load_dotenv

PathLike = Union[str, Path]
_LOADED = False
_REPO_DOTENV = Path(__file__).resolve().parent.parent / ".env"


def _candidate_paths(extra_paths: Iterable[PathLike] | None) -> list[Path]:
    candidates: list[Path] = []
    for raw_path in extra_paths or ():
        candidates.append(Path(raw_path).expanduser())

    found = find_dotenv(usecwd=True)
    if found:
        candidates.append(Path(found))
    candidates.append(_REPO_DOTENV)
    return candidates


def load_env(*, override: bool = False, extra_paths: Iterable[PathLike] | None = None) -> bool:
    """Load environment variables from `.env` files if they exist.

    Args:
        override: When ``True`` existing variables may be replaced.
        extra_paths: Optional files loaded before the working directory and
            repository ``.env`` files.

    Returns:
        ``True`` if any environment file was loaded.
    """

    global _LOADED

    if _LOADED and not override and extra_paths is None:
        return True

    loaded_any = False
    seen: set[Path] = set()
    for path in _candidate_paths(extra_paths):
        if not path.exists():
            continue
        resolved = path.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        loaded_any = load_dotenv(resolved, override=override) or loaded_any

    if not override:
        _LOADED = True

    return loaded_any
