import logging

from celery import shared_task

from .orchestrator import Orchestrator
from .store import JobStore
from .utils import remove_orphan_work_dirs

logger = logging.getLogger(__name__)


@shared_task(bind=True)
def process_job(self, job_id: str):
    """Drive one job; the claim makes duplicate dispatches harmless."""
    job = Orchestrator(f"celery:{self.request.id}").process(job_id)
    return job.status if job else None


@shared_task
def sweep_claimable(limit: int = 50):
    """Re-dispatch PENDING jobs and jobs whose worker stopped renewing its lease."""
    store = JobStore()
    ids = store.claimable_ids(limit=limit)
    for job_id in ids:
        process_job.delay(job_id)
    if ids:
        logger.info("Dispatched %d claimable job(s)", len(ids))
    # work dirs of killed runs whose job has since finished or been deleted
    remove_orphan_work_dirs(store.open_ids())
    return len(ids)
