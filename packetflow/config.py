"""Runtime settings, read from ``PACKETFLOW_*`` environment variables."""

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel

ENV_PREFIX = "PACKETFLOW_"


class Settings(BaseModel):
    """Engine and server configuration."""

    db_path: Path = Path("data/packetflow.db")
    """SQLite database file."""

    plugins_dir: Path = Path("plugins")
    """Directory scanned for handler plugins."""

    flows_config: Optional[Path] = Path("config/flows.yaml")
    """YAML file with flow definitions, loaded at start. None disables it."""

    watch_flows: bool = True
    """Reload ``flows_config`` whenever the file changes."""

    max_concurrent_jobs: int = 1
    """Jobs the background worker runs at once."""

    poll_interval: float = 1.0
    """Seconds between worker polls for pending jobs."""

    job_timeout_seconds: int = 3600
    """Deadline for a job, counted from its creation."""

    stale_grace_seconds: int = 600
    """Slack past the deadline before the sweep fails a job."""

    sweep_interval: float = 60.0
    """Seconds between stale-job sweeps."""

    log_level: str = "info"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from the environment.

        Recognized variables: PACKETFLOW_DB_PATH, PACKETFLOW_PLUGINS_DIR,
        PACKETFLOW_FLOWS_CONFIG (empty to disable), PACKETFLOW_WATCH_FLOWS,
        PACKETFLOW_MAX_CONCURRENT_JOBS, PACKETFLOW_POLL_INTERVAL,
        PACKETFLOW_JOB_TIMEOUT, PACKETFLOW_STALE_GRACE, PACKETFLOW_SWEEP_INTERVAL,
        PACKETFLOW_LOG_LEVEL.
        """
        env = os.environ if environ is None else environ
        names = {
            "db_path": "DB_PATH",
            "plugins_dir": "PLUGINS_DIR",
            "flows_config": "FLOWS_CONFIG",
            "watch_flows": "WATCH_FLOWS",
            "max_concurrent_jobs": "MAX_CONCURRENT_JOBS",
            "poll_interval": "POLL_INTERVAL",
            "job_timeout_seconds": "JOB_TIMEOUT",
            "stale_grace_seconds": "STALE_GRACE",
            "sweep_interval": "SWEEP_INTERVAL",
            "log_level": "LOG_LEVEL",
        }
        values: dict = {}
        for field_name, suffix in names.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is None:
                continue
            if field_name == "flows_config" and raw.strip() == "":
                values[field_name] = None
            else:
                values[field_name] = raw
        return cls(**values)
