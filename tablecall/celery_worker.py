"""
Celery worker for call-history exports.

Exports run off the request path on a dedicated ``exports`` queue; Redis is
both broker and result backend.

Run with:
    celery -A tablecall.celery_worker worker -Q exports --loglevel=info
"""

from celery import Celery

from tablecall.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    'tablecall_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['tablecall.tasks'],
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    task_routes={
        'tablecall.tasks.export_call_history': {'queue': 'exports'},
        'tablecall.tasks.health_check': {'queue': 'exports'},
    },
    task_default_queue='exports',

    # One workbook write per process; writers serialize on the file lock anyway
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    # A stuck lock wait must not hold a worker forever
    task_soft_time_limit=settings.excel_lock_timeout * 4,
    task_time_limit=settings.excel_lock_timeout * 6,

    result_expires=3600,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
)


if __name__ == '__main__':
    celery_app.start()
