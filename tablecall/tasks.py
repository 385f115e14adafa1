"""
Celery Tasks
Background export of call history, off the request path.
"""

import logging
import time
from datetime import datetime

from tablecall.celery_worker import celery_app
from tablecall.services.excel_manager import ExcelManager

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def export_call_history(self, establishment_id: str, rows: list) -> dict:
    """
    Export an establishment's calls to its Excel workbook.

    Args:
        establishment_id: Establishment the rows belong to
        rows: Call dictionaries (``Call.to_dict()``)

    Returns:
        dict: Result of the export operation
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: exporting {len(rows)} call(s) for {establishment_id}")
    start_time = time.time()

    result = ExcelManager.export_call_history(establishment_id, rows)

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed

    if result['success']:
        logger.info(f"Task {task_id}: export for {establishment_id} completed in {elapsed}s")
    else:
        logger.warning(f"Task {task_id}: export for {establishment_id} failed - {result['message']}")

    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
