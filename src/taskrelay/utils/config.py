from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import load_dotenv

from taskrelay.models.worker import Worker

load_dotenv()

logger = logging.getLogger(__name__)

# Roster used when no workers file is configured.
DEFAULT_WORKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("architect-agent", ("architecture", "design")),
    ("backend-agent", ("backend", "backend-api", "api")),
    ("rd-agent", ("rd", "research")),
)


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Storage
    store: str = field(default_factory=lambda: os.environ.get("TASKRELAY_STORE", "sqlite"))
    db_path: Path = field(
        default_factory=lambda: Path(os.environ.get("TASKRELAY_DB_PATH", "data/taskrelay.db"))
    )
    data_dir: Path = field(
        default_factory=lambda: Path(os.environ.get("TASKRELAY_DATA_DIR", "data/items"))
    )

    # Workers
    workers_file: Path | None = field(
        default_factory=lambda: (
            Path(os.environ["TASKRELAY_WORKERS_FILE"])
            if os.environ.get("TASKRELAY_WORKERS_FILE")
            else None
        )
    )
    default_capacity: int = field(
        default_factory=lambda: int(os.environ.get("TASKRELAY_DEFAULT_CAPACITY", "2"))
    )

    # Triggers
    tick_interval: float = field(
        default_factory=lambda: float(os.environ.get("TASKRELAY_TICK_INTERVAL", "3600"))
    )
    poll_interval: float = field(
        default_factory=lambda: float(os.environ.get("TASKRELAY_POLL_INTERVAL", "0.5"))
    )
    settle_seconds: float = field(
        default_factory=lambda: float(os.environ.get("TASKRELAY_SETTLE_SECONDS", "1.5"))
    )
    daily_report: str | None = field(
        default_factory=lambda: os.environ.get("TASKRELAY_DAILY_REPORT", "08:00") or None
    )
    weekly_report: str | None = field(
        default_factory=lambda: os.environ.get("TASKRELAY_WEEKLY_REPORT", "fri 16:00") or None
    )
    queue_size: int = field(
        default_factory=lambda: int(os.environ.get("TASKRELAY_QUEUE_SIZE", "256"))
    )

    # Delegated work
    completion_timeout: float = field(
        default_factory=lambda: float(os.environ.get("TASKRELAY_COMPLETION_TIMEOUT", "900"))
    )
    stale_factor: float = field(
        default_factory=lambda: float(os.environ.get("TASKRELAY_STALE_FACTOR", "3"))
    )
    anthropic_api_key: str | None = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY")
    )
    completion_model: str = field(
        default_factory=lambda: os.environ.get(
            "TASKRELAY_COMPLETION_MODEL", "claude-sonnet-4-20250514"
        )
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("TASKRELAY_LOG_LEVEL", "INFO")
    )

    @property
    def stale_after_seconds(self) -> float:
        return self.completion_timeout * self.stale_factor


def get_config() -> Config:
    """Return a Config instance (singleton-friendly via module caching)."""
    return Config()


def load_workers(config: Config) -> list[Worker]:
    """Build the worker roster from the YAML workers file or the default roster.

    The file looks like::

        workers:
          - id: backend-agent
            capabilities: [backend, api]
            max_capacity: 2
    """
    if config.workers_file is None:
        return [
            Worker(id=worker_id, capabilities=set(caps), max_capacity=config.default_capacity)
            for worker_id, caps in DEFAULT_WORKERS
        ]

    with open(config.workers_file, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    entries = data.get("workers") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ValueError(f"{config.workers_file}: expected a 'workers' list")

    workers: list[Worker] = []
    seen: set[str] = set()
    for entry in entries:
        worker = Worker.model_validate(
            {"max_capacity": config.default_capacity, **entry, "workload": 0}
        )
        if worker.id in seen:
            raise ValueError(f"{config.workers_file}: duplicate worker id {worker.id!r}")
        seen.add(worker.id)
        workers.append(worker)
    logger.info("Loaded %d workers from %s", len(workers), config.workers_file)
    return workers
