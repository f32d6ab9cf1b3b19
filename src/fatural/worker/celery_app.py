from __future__ import annotations

from celery import Celery

from fatural.core.config import settings


def make_celery() -> Celery:
    app = Celery("fatural", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment in {"dev", "test"},
        task_eager_propagates=True,
        task_track_started=True,
        # A worker lost mid-extraction gets its attempt redelivered.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
    )
    app.autodiscover_tasks(["fatural.worker.tasks"])
    return app


celery_app = make_celery()
