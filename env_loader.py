"""
Loads local environment files for the chain diagnosis service.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv


def load_service_env() -> List[Path]:
    """
    Loads `RADIANCE_ENV_FILE` (when set), then service-local `.env` and
    `.env.local`. Existing shell exports take precedence.

    Returns the files that were found and loaded.
    """
    service_dir = Path(__file__).resolve().parent
    candidates: List[Path] = []
    explicit = (os.getenv("RADIANCE_ENV_FILE") or "").strip()
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([service_dir / ".env", service_dir / ".env.local"])

    loaded: List[Path] = []
    for path in candidates:
        if path.is_file():
            load_dotenv(path, override=False)
            loaded.append(path)
    return loaded
