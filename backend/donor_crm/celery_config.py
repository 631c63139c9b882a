from celery import Celery

from donor_crm import config

celery_app = Celery(
    "donor_crm_tasks",
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_RESULT_BACKEND,
    include=["donor_crm.tasks"]
)

celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_ignore_result=False,
    # Kill a tick that hangs well past the next one
    task_time_limit=config.JOURNEY_TICK_INTERVAL_SECONDS * 5,
    worker_max_tasks_per_child=1000,
    result_expires=3600,  # 1 hour
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,
    result_backend_transport_options={
        'retry_on_timeout': True,
        'max_retries': 3,
    }
)
