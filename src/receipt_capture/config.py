import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

DEFAULT_BASE_URL = "http://localhost:5000/api"
QUEUE_BACKENDS = ("sqlite", "memory")


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    Lets the CLI run from a subdirectory and still pick up the project's .env.
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


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read the nearest .env into a mapping; does not mutate os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    values = {k: v for k, v in dotenv_values(path).items() if v is not None}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _lookup(key: str, env: Dict[str, str]) -> Optional[str]:
    v = os.environ.get(key)
    if v is None:
        v = env.get(key)
    if v is None:
        return None
    v = v.strip()
    return v or None


def _as_float(key: str, raw: Optional[str], default: float, *, minimum: float = 0.0) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning(f"{key}={raw!r} is not a number; using {default}")
        return default
    return max(minimum, value)


def _as_int(key: str, raw: Optional[str], default: int, *, minimum: int = 1) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning(f"{key}={raw!r} is not an integer; using {default}")
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class PipelineSettings:
    base_url: str = DEFAULT_BASE_URL
    token: Optional[str] = None
    http_timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    queue_backend: str = "sqlite"
    camera_settle: float = 0.1
    batch_concurrency: int = 1


def load_token(dotenv_dir: str) -> Optional[str]:
    tok = os.environ.get("RECEIPT_API_TOKEN")
    if tok:
        log.info("Using RECEIPT_API_TOKEN from environment")
        return tok.strip()
    v = _read_dotenv(dotenv_dir).get("RECEIPT_API_TOKEN")
    if v:
        log.info("Loaded RECEIPT_API_TOKEN from .env file")
        return v.strip()
    log.debug("RECEIPT_API_TOKEN not found in env or .env")
    return None


def load_base_url(dotenv_dir: str, fallback: str = DEFAULT_BASE_URL) -> str:
    return (_lookup("RECEIPT_API_BASE_URL", _read_dotenv(dotenv_dir)) or fallback).rstrip("/")


def load_settings(dotenv_dir: str = ".") -> PipelineSettings:
    """Build PipelineSettings from env vars, then .env, then defaults."""
    env = _read_dotenv(dotenv_dir)
    backend = (_lookup("RECEIPT_QUEUE_BACKEND", env) or "sqlite").lower()
    if backend not in QUEUE_BACKENDS:
        log.warning(f"Unknown RECEIPT_QUEUE_BACKEND={backend!r}; falling back to sqlite")
        backend = "sqlite"
    return PipelineSettings(
        base_url=(_lookup("RECEIPT_API_BASE_URL", env) or DEFAULT_BASE_URL).rstrip("/"),
        token=_lookup("RECEIPT_API_TOKEN", env),
        http_timeout=_as_float("RECEIPT_HTTP_TIMEOUT", _lookup("RECEIPT_HTTP_TIMEOUT", env), 30.0, minimum=0.1),
        retry_attempts=_as_int("RECEIPT_RETRY_ATTEMPTS", _lookup("RECEIPT_RETRY_ATTEMPTS", env), 3),
        retry_delay=_as_float("RECEIPT_RETRY_DELAY", _lookup("RECEIPT_RETRY_DELAY", env), 1.0),
        queue_backend=backend,
        camera_settle=_as_float("RECEIPT_CAMERA_SETTLE", _lookup("RECEIPT_CAMERA_SETTLE", env), 0.1),
        batch_concurrency=_as_int("RECEIPT_BATCH_CONCURRENCY", _lookup("RECEIPT_BATCH_CONCURRENCY", env), 1),
    )
