from celery import Celery
from celery.schedules import crontab

from .config import get_settings
from .logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "research_orchestrator",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_routes={"app.services.orchestrator.process_research_queue": {"queue": "research"}},
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # A single worker owns the global queue; never prefetch more than one drain
    worker_prefetch_multiplier=1,
    imports=("app.services.orchestrator",),
    beat_schedule={
        # Periodic nudge so queued jobs are picked up even if a dispatch was lost
        "drain-research-queue": {
            "task": "app.services.orchestrator.process_research_queue",
            "schedule": crontab(minute="*/5"),
        },
    },
)
