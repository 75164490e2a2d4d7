from datetime import timedelta

from celery import Celery

from billing_collections.config import settings
from billing_collections.logging import configure_logging


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": settings.billing_timezone,
        "task_acks_late": True,
    }


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {
        "billing_anchor": {
            "task": "billing_collections.tasks.collections.run_anchor",
            "schedule": timedelta(
                seconds=max(settings.billing_jobs_anchor_interval_seconds, 60)
            ),
        },
        "billing_pd_presentment": {
            "task": "billing_collections.tasks.collections.run_presentment",
            "schedule": timedelta(
                seconds=max(settings.billing_jobs_presentment_interval_seconds, 60)
            ),
        },
        "billing_fiscal_retry": {
            "task": "billing_collections.tasks.collections.run_fiscal_retry",
            "schedule": timedelta(
                seconds=max(settings.billing_jobs_fiscal_retry_interval_seconds, 60)
            ),
        },
    }
    if settings.billing_dunning_enable_fallback:
        interval = timedelta(
            seconds=max(settings.billing_jobs_fallback_sync_interval_seconds, 60)
        )
        schedule["billing_fallback_create"] = {
            "task": "billing_collections.tasks.collections.run_fallback_create",
            "schedule": interval,
        }
        schedule["billing_fallback_sync"] = {
            "task": "billing_collections.tasks.collections.run_fallback_sync",
            "schedule": interval,
        }
    return schedule


configure_logging()
celery_app = Celery("billing_collections")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["billing_collections.tasks"])
