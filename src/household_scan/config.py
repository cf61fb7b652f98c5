import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from dotenv import dotenv_values

from .logging import get_logger
from .paths import find_project_root, var_dir

log = get_logger("config")

DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
DEFAULT_DB_FOLDER = "ingredientdb"
DEFAULT_DB_FILENAME = "ingredients.sqlite3"


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    repository-level config files like `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: Optional[str]) -> Dict[str, str]:
    """Read the nearest .env as a mapping; does not mutate the environment."""
    path = _find_upwards(dotenv_dir or os.getcwd(), ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir or '.')}")
        return {}
    env = {k: v.strip() for k, v in dotenv_values(path).items() if k and v is not None}
    log.debug(f"Loaded {len(env)} key(s) from .env at {path}")
    return env


def _lookup(key: str, dotenv_dir: Optional[str], env: Optional[Dict[str, str]] = None) -> Optional[str]:
    v = os.environ.get(key)
    if v and v.strip():
        return v.strip()
    if env is None:
        env = _read_dotenv(dotenv_dir)
    v = env.get(key) or env.get(key.lower())
    return v.strip() if v and v.strip() else None


@dataclass(frozen=True)
class GeminiSettings:
    api_key: Optional[str]
    model: str
    vision_model: str


def load_gemini(dotenv_dir: Optional[str] = None) -> GeminiSettings:
    """Return Gemini API key and model names from env or .env.

    GEMINI_VISION_MODEL falls back to GEMINI_MODEL, which falls back to
    gemini-2.0-flash.
    """
    env = _read_dotenv(dotenv_dir)
    api_key = _lookup("GEMINI_API_KEY", dotenv_dir, env)
    model = _lookup("GEMINI_MODEL", dotenv_dir, env) or DEFAULT_GEMINI_MODEL
    vision_model = _lookup("GEMINI_VISION_MODEL", dotenv_dir, env) or model
    if api_key:
        log.info("Loaded GEMINI_API_KEY (model=%s, vision_model=%s)", model, vision_model)
    else:
        log.debug("GEMINI_API_KEY not found in env or .env")
    return GeminiSettings(api_key=api_key, model=model, vision_model=vision_model)


def load_ingredient_db_path(dotenv_dir: Optional[str] = None) -> str:
    """Return the ingredient store path (INGREDIENT_DB_PATH or var/ingredientdb/)."""
    v = _lookup("INGREDIENT_DB_PATH", dotenv_dir)
    if v:
        return os.path.abspath(os.path.expanduser(v))
    root = find_project_root(dotenv_dir)
    return os.path.join(var_dir(root), DEFAULT_DB_FOLDER, DEFAULT_DB_FILENAME)


def load_allowed_origins(dotenv_dir: Optional[str] = None) -> List[str]:
    """Return CORS origins from ALLOWED_ORIGIN (comma separated), default any."""
    v = _lookup("ALLOWED_ORIGIN", dotenv_dir)
    if not v:
        return ["*"]
    origins = [item.strip() for item in v.split(",") if item.strip()]
    return origins or ["*"]
