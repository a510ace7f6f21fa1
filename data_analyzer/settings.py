from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from data_analyzer.access import AccessPolicy

POLL_INTERVAL_SECONDS = 5.0
INITIAL_POLL_DELAY_SECONDS = 2.0
# ~2 minutes of polling at the default interval
STALL_THRESHOLD = 24
SESSION_EXPIRY_HOURS = 24
REQUEST_TIMEOUT = 120


@dataclass(frozen=True)
class Settings:
    n8n_url: str = "http://localhost:3001"
    pocketbase_url: str = "http://localhost:3002"
    request_timeout: float = REQUEST_TIMEOUT
    poll_interval: float = POLL_INTERVAL_SECONDS
    initial_poll_delay: float = INITIAL_POLL_DELAY_SECONDS
    stall_threshold: int = STALL_THRESHOLD
    access_policy: AccessPolicy = AccessPolicy.STRICT
    session_expiry_hours: float = SESSION_EXPIRY_HOURS
    session_dir: Path = Path("data_store/sessions")
    redis_url: str | None = None
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:5173"])


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}.") from exc


def load_settings() -> Settings:
    policy_raw = os.getenv("DATASET_ACCESS_POLICY", AccessPolicy.STRICT.value).strip().lower()
    try:
        policy = AccessPolicy(policy_raw)
    except ValueError as exc:
        raise RuntimeError("Unsupported DATASET_ACCESS_POLICY. Use 'strict' or 'permissive'.") from exc

    origins_env = os.getenv("API_CORS_ORIGINS", "")
    origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]

    defaults = Settings()
    return Settings(
        n8n_url=os.getenv("MCP_N8N_URL", defaults.n8n_url).strip().rstrip("/"),
        pocketbase_url=os.getenv("MCP_POCKETBASE_URL", defaults.pocketbase_url).strip().rstrip("/"),
        request_timeout=_env_float("REQUEST_TIMEOUT", defaults.request_timeout),
        poll_interval=_env_float("REPORT_POLL_INTERVAL_SECONDS", defaults.poll_interval),
        initial_poll_delay=_env_float("REPORT_INITIAL_POLL_DELAY_SECONDS", defaults.initial_poll_delay),
        stall_threshold=int(_env_float("REPORT_STALL_THRESHOLD", defaults.stall_threshold)),
        access_policy=policy,
        session_expiry_hours=_env_float("SESSION_EXPIRY_HOURS", defaults.session_expiry_hours),
        session_dir=Path(os.getenv("SESSION_DIR", str(defaults.session_dir))),
        redis_url=os.getenv("REDIS_URL") or None,
        cors_origins=origins or defaults.cors_origins,
    )
