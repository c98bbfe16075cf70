import logging

from clipai.workers.celery_app import celery

logger = logging.getLogger(__name__)


@celery.task(name="clipai.workers.tasks.process_job", bind=True)
def process_job(self, job_id: int) -> None:
    from clipai.workers.pipeline import build_orchestrator

    logger.info("JOB_TASK_RECEIVED job_id=%s task_id=%s", job_id, self.request.id)
    build_orchestrator().run_job(job_id)
