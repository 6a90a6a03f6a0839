"""arq worker entry point.

Run with: deklaro-worker
Or: arq deklaro.queue.tasks.WorkerSettings

Settings are read once here and handed to the startup hook through the worker
context, so the hook and this runner agree on one configuration.
"""

import logging

from arq import run_worker

from deklaro.queue.tasks import WorkerSettings
from deklaro.shared.config import get_settings
from deklaro.shared.logging import configure_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    configure_logging(settings)

    redis_settings = WorkerSettings.get_redis_settings(settings)
    submission = "on" if settings.ksef_token is not None else "off"
    redis_target = f"{redis_settings.host}:{redis_settings.port}/{redis_settings.database}"
    logger.info(
        f"Worker starting: redis={redis_target}, "
        f"ocr={settings.ocr_engine}, extraction={settings.extraction_provider}, "
        f"submission={submission}, max_jobs={settings.queue_max_jobs}, "
        f"timeout={settings.queue_job_timeout}s"
    )

    WorkerSettings.redis_settings = redis_settings
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout

    run_worker(WorkerSettings, ctx={"settings": settings})  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
