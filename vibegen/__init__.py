import logging
import os
import sys
from pathlib import Path
from typing import Dict, MutableMapping, Optional, Sequence

log = logging.getLogger(__name__)

# Settings the package reads from the environment at import time.
CONFIG_KEYS = frozenset({
    "OPENROUTER_API_KEY", "OPENROUTER_MODEL", "OPENROUTER_FALLBACK_MODEL",
    "OPENROUTER_BACKOFF_INITIAL", "OPENROUTER_BACKOFF_MAX",
    "GROQ_API_KEY", "GROQ_MODEL",
    "TEXT_MODEL", "VISUAL_MODEL", "TEXT_MAX_TOKENS", "VISUAL_MAX_TOKENS",
    "TEMPERATURE", "LLM_TIMEOUT_SECS", "GENERATION_MODE",
    "IDEOGRAM_API_KEY", "IDEOGRAM_MODEL", "IDEOGRAM_FALLBACK_MODEL", "IMAGE_TIMEOUT_SECS",
    "ALLOW_ORIGINS", "LOG_LEVEL",
})

DEFAULT_ENV_PATHS = (Path.cwd() / ".env", Path(__file__).resolve().parent.parent / ".env")


def _unquote(val: str) -> str:
    if len(val) >= 2 and val[0] == val[-1] and val[0] in "\"'":
        return val[1:-1]
    # unquoted values may carry a trailing comment
    return val.split(" #", 1)[0].rstrip()


def load_env_file(
    paths: Optional[Sequence[Path]] = None,
    environ: Optional[MutableMapping[str, str]] = None,
) -> Dict[str, str]:
    """Copy vibegen settings from the first .env file found into the environment.

    Only CONFIG_KEYS are read and variables that are already set win. Returns
    the settings that were applied.
    """
    environ = os.environ if environ is None else environ
    env_path = next((p for p in (paths or DEFAULT_ENV_PATHS) if p.is_file()), None)
    if env_path is None:
        return {}
    try:
        text = env_path.read_text(encoding="utf-8")
    except OSError as e:
        log.warning("could not read %s: %s", env_path, e)
        return {}
    applied: Dict[str, str] = {}
    for line in text.splitlines():
        s = line.strip()
        if s.startswith("export "):
            s = s[len("export "):].lstrip()
        if not s or s.startswith("#") or "=" not in s:
            continue
        key, val = (part.strip() for part in s.split("=", 1))
        if key not in CONFIG_KEYS or key in environ:
            continue
        environ[key] = applied[key] = _unquote(val)
    if applied:
        log.debug("loaded %s from %s", ", ".join(sorted(applied)), env_path)
    return applied


# Tests stay offline and see only what they set themselves; pytest imports
# the package during collection, before PYTEST_CURRENT_TEST is set.
if "pytest" not in sys.modules and not os.getenv("PYTEST_CURRENT_TEST"):
    load_env_file()
