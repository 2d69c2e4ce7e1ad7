from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from pipegate.cache import DEFAULT_CACHE_DIR
from pipegate.runner import DEFAULT_WORK_DIR
from pipegate.workflow import DEFAULT_WORKFLOW_FILE

DEFAULT_DATABASE_URL = "sqlite:///.pipegate/pipegate.db"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    workflow: str = DEFAULT_WORKFLOW_FILE
    cache_dir: str = DEFAULT_CACHE_DIR
    work_dir: str = DEFAULT_WORK_DIR
    report_dir: Optional[str] = None
    max_workers: Optional[int] = None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    workers = env.get("PIPEGATE_MAX_WORKERS")
    return Settings(
        database_url=env.get("PIPEGATE_DATABASE_URL", DEFAULT_DATABASE_URL),
        workflow=env.get("PIPEGATE_WORKFLOW", DEFAULT_WORKFLOW_FILE),
        cache_dir=env.get("PIPEGATE_CACHE_DIR", DEFAULT_CACHE_DIR),
        work_dir=env.get("PIPEGATE_WORK_DIR", DEFAULT_WORK_DIR),
        report_dir=env.get("PIPEGATE_REPORT_DIR") or None,
        max_workers=int(workers) if workers else None,
    )
