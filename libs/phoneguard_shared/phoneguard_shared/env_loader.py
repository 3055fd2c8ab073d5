import logging
import os
from functools import lru_cache

logger = logging.getLogger("phoneguard.env")


@lru_cache(maxsize=1)
def ensure_loaded() -> str | None:
    """Load the central env file once, if one is present.

    Priority:
    1) PHONEGUARD_ENV_FILE path
    2) /etc/phoneguard/phoneguard.env
    3) .env (relative to CWD)
    Variables already present in the environment are never overridden.
    Returns the path that was loaded, if any.
    """
    candidates = [
        os.getenv("PHONEGUARD_ENV_FILE", ""),
        "/etc/phoneguard/phoneguard.env",
        ".env",
    ]
    for path in candidates:
        if path and os.path.isfile(path):
            load_env_file(path)
            return path
    return None


def load_env_file(path: str) -> int:
    """Apply KEY=VALUE lines from ``path``; returns how many keys were set."""
    applied = 0
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                if line.startswith("export "):
                    line = line[len("export "):]
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if key and key not in os.environ:
                    os.environ[key] = value
                    applied += 1
    except OSError as exc:
        logger.warning("Could not read env file %s: %s", path, exc)
    return applied
