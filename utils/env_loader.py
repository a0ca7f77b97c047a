"""
Shared environment loader for the replica pipeline.
Supports loading .env.cloud, .env.local or .env from the repository root.
"""

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Module-level flag to track if environment has been loaded
_env_loaded = False
_env_loaded_from: Optional[Path] = None

ENV_FILE_NAMES = (".env.cloud", ".env.local", ".env")


def load_environment(env_file=None, search_dir=None) -> Optional[Path]:
    """Load environment variables for the replica pipeline.

    Priority:
    1. If env_file is given: only load that file (it must exist)
    2. Otherwise: the first of .env.cloud, .env.local, .env found in search_dir
       (defaults to the repository root)

    Variables already present in the process environment always win. This
    function is idempotent; once a file has been loaded later calls are no-ops.
    Returns the path that was loaded, or None when only the process
    environment is used.
    """
    global _env_loaded, _env_loaded_from

    if _env_loaded:
        return _env_loaded_from

    if env_file is not None:
        env_path = Path(env_file)
        if not env_path.exists():
            raise FileNotFoundError(f"Environment file not found: {env_path}")
        load_dotenv(env_path, override=False)
        logger.info("Loaded environment from: %s", env_path)
        _env_loaded, _env_loaded_from = True, env_path
        return env_path

    # Repo root is the parent of the utils directory
    root = Path(search_dir) if search_dir else Path(__file__).resolve().parent.parent
    for name in ENV_FILE_NAMES:
        candidate = root / name
        if candidate.exists():
            load_dotenv(candidate, override=False)
            logger.info("Loaded environment from: %s", candidate)
            _env_loaded, _env_loaded_from = True, candidate
            return candidate

    logger.debug("No environment file found in %s; using process environment", root)
    _env_loaded = True
    return None


def reset_environment_state() -> None:
    """Forget that an environment file was loaded (used by tests)."""
    global _env_loaded, _env_loaded_from
    _env_loaded = False
    _env_loaded_from = None
