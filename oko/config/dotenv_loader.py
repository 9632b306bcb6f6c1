"""
Dotenv loading for local runs.

`.env` is loaded first, then `.env.local` on top of it. Nothing is loaded when
ENVIRONMENT=prod; production credentials come from the process environment.

Must not import oko.config.config: it runs before the config is read so that
${VAR} references in config.yaml can resolve.
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


def is_prod_environment() -> bool:
    return (os.getenv("ENVIRONMENT") or "dev").strip().lower() == "prod"


def load_dotenv_files(*, root: Path | None = None) -> list[Path]:
    """Load dotenv files from root (default: current directory). Returns the files loaded."""
    if is_prod_environment():
        return []

    base = root or Path.cwd()
    loaded = []
    for name, override in ((".env", False), (".env.local", True)):
        path = base / name
        if path.exists():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
