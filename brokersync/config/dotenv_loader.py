"""
Dotenv loading for broker credentials.

BROKER_USERNAME / BROKER_PASSWORD usually live in a local `.env`. Files are
read in this order, later ones overriding earlier ones:

    <project root>/.env
    <project root>/.env.local
    $BROKERSYNC_ENV_FILE            (explicit path, if set)

Nothing is loaded when ENVIRONMENT is `prod` (credentials come from the
process environment) or `test` (test runs must not pick up real
credentials). Must not import `brokersync.config.config`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

SKIP_ENVIRONMENTS = frozenset({"prod", "test"})
ENV_FILE_VAR = "BROKERSYNC_ENV_FILE"


def _current_environment() -> str:
    return (os.getenv("ENVIRONMENT") or "dev").strip().lower()


def candidate_env_files(repo_root: Path | None = None) -> List[Path]:
    root = repo_root or Path(__file__).resolve().parent.parent.parent
    files = [root / ".env", root / ".env.local"]
    explicit = os.getenv(ENV_FILE_VAR)
    if explicit:
        files.append(Path(explicit).expanduser())
    return files


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """Load the dotenv files that exist and return their paths."""
    if _current_environment() in SKIP_ENVIRONMENTS:
        return []

    loaded = []
    for i, path in enumerate(candidate_env_files(repo_root)):
        if not path.is_file():
            continue
        # The base .env never clobbers variables already exported
        load_dotenv(dotenv_path=path, override=i > 0)
        loaded.append(path)
    return loaded
