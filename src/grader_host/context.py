from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from .api.app import HealthCheck
from .core.db import Database, NeverCanceled
from .core.settings import Settings
from .executor.docker_runner import DockerSandboxRunner
from .queue.provider import QueueProvider
from .services.artifact_store import ArtifactStoreProvider
from .services.load import DatabaseLoadReporter, LoadTracker, LogLoadReporter
from .services.notifier import CallbackNotifier
from .services.results import ResultExtractor
from .services.workspace import Workspaces


@dataclass
class WorkerContext:
    """Everything the worker loops share. Built once at startup, read-only afterwards."""

    settings: Settings
    queues: QueueProvider
    stores: ArtifactStoreProvider
    runner: Any
    extractor: ResultExtractor
    workspaces: Workspaces
    cancellation: Any
    notifier: CallbackNotifier
    health: HealthCheck
    load: LoadTracker
    log: Any
    db: Optional[Database] = None


def build_context(settings: Settings) -> WorkerContext:
    log = structlog.get_logger()
    health = HealthCheck()

    db = Database(settings.database_url) if settings.use_database else None
    reporter = None
    if settings.report_load:
        reporter = DatabaseLoadReporter(db) if db is not None else LogLoadReporter()

    return WorkerContext(
        settings=settings,
        queues=QueueProvider(settings),
        stores=ArtifactStoreProvider(settings),
        runner=DockerSandboxRunner(health),
        extractor=ResultExtractor(),
        workspaces=Workspaces(settings.job_files_volume_path if settings.uses_shared_volume else None),
        cancellation=db if db is not None else NeverCanceled(),
        notifier=CallbackNotifier(),
        health=health,
        load=LoadTracker(
            settings.max_concurrent_jobs,
            reporter,
            instance_id=settings.instance_id,
            queue_name=settings.queue_name,
            interval_s=settings.report_interval_sec,
        ),
        log=log,
        db=db,
    )
