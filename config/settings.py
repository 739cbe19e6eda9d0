"""
Configuration loader for the follow-up scheduling core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./followup.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"               # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "followup"
    consumer_concurrency: int = 5       # max concurrent deliveries per worker
    poll_interval: float = 5.0          # seconds between due-job scans
    batch_size: int = 10
    visibility_timeout: int = 300       # seconds before an unacked job is redelivered
    max_attempts: int = 3
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff


@dataclass
class LockConfig:
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "job-lock:"
    ttl_seconds: int = 3600             # crashed holder's lock self-expires after this


@dataclass
class FollowUpSettings:
    ticket_lock_ttl_seconds: int = 150     # must exceed the backend delivery budget
    ticket_lock_wait_seconds: float = 10.0


@dataclass
class WebhookRetryConfig:
    max_retries: int = 3
    batch_size: int = 50
    backoff_minutes: int = 5


@dataclass
class BackendConfig:
    """CRM services that generate/send nudges and replay webhooks."""
    base_url: str = ""                  # empty = collaborators not wired
    auth_type: str = "none"             # "bearer" | "api_key" | "none"
    auth_credentials: dict[str, str] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=lambda: {
        "deliver_followup": "/api/internal/followups/deliver",
        "process_webhook": "/api/internal/webhooks/process",
    })
    timeout: float = 30.0


@dataclass
class JobsConfig:
    cron_secret: str = "development-secret"
    # job_type -> seconds between runs for the in-process trigger
    intervals: dict[str, int] = field(default_factory=lambda: {
        "webhook-retry": 300,
        "scheduler-health-check": 600,
    })


@dataclass
class Settings:
    app_name: str = "FollowUpCore"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    followup: FollowUpSettings = field(default_factory=FollowUpSettings)
    webhook_retry: WebhookRetryConfig = field(default_factory=WebhookRetryConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FOLLOWUP_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"])
        if "locks" in raw:
            settings.locks = _section(LockConfig, raw["locks"])
        if "followup" in raw:
            settings.followup = _section(FollowUpSettings, raw["followup"])
        if "webhook_retry" in raw:
            settings.webhook_retry = _section(WebhookRetryConfig, raw["webhook_retry"])
        if "jobs" in raw:
            jobs = raw["jobs"]
            settings.jobs = JobsConfig(
                cron_secret=jobs.get("cron_secret", settings.jobs.cron_secret),
                intervals={**settings.jobs.intervals, **(jobs.get("intervals") or {})},
            )
        if "backend" in raw:
            backend = dict(raw["backend"] or {})
            backend["endpoints"] = {**settings.backend.endpoints, **(backend.get("endpoints") or {})}
            settings.backend = _section(BackendConfig, backend)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
