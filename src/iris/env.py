# src/iris/env.py
from __future__ import annotations

"""Best-effort `.env` loading for gateway nodes.

Lookup order: explicit argument, IRIS_DOTENV_PATH, then ./.env. Variables
already present in the process environment always win over the file. The
first call per process decides; later calls are no-ops until
reset_dotenv_state().
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_attempted = False
_loaded_path: Optional[str] = None


def _resolve(dotenv_path: Optional[str]) -> Optional[Path]:
    raw = dotenv_path or os.environ.get("IRIS_DOTENV_PATH") or ".env"
    path = Path(raw).expanduser()
    return path if path.is_file() else None


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> bool:
    """Returns True only when this call found and loaded a file."""
    global _attempted, _loaded_path
    if _attempted:
        return False
    _attempted = True

    path = _resolve(dotenv_path)
    if path is None:
        return False

    load_dotenv(dotenv_path=path, override=False)
    _loaded_path = str(path)
    return True


def loaded_dotenv_path() -> Optional[str]:
    return _loaded_path


def reset_dotenv_state() -> None:
    """Allow a fresh load (tests)."""
    global _attempted, _loaded_path
    _attempted = False
    _loaded_path = None
