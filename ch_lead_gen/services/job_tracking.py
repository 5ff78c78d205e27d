"""
Job tracker: lifecycle, progress and cooperative cancellation for runs.

Keys (state store, 1h TTL):
    ch_lead_gen_job_{id}          → job record
    ch_lead_gen_job_current_job   → single-slot pointer to the latest job
    ch_lead_gen_job_running       → ids of jobs not yet terminal

Once a job is completed, failed or cancelled it is never transitioned again.
"""
import logging
import time
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from ch_lead_gen.config import JOB_TTL

logger = logging.getLogger('services.job_tracking')

PREFIX = 'ch_lead_gen_job_'
CURRENT_KEY = f'{PREFIX}current_job'
RUNNING_KEY = f'{PREFIX}running'

RUNNING = 'running'
COMPLETED = 'completed'
FAILED = 'failed'
CANCELLED = 'cancelled'
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)


def generate_job_id() -> str:
    return f'lead_gen_{uuid.uuid4().hex[:13]}_{int(time.time())}'


class JobTracker:

    def __init__(self, store, ttl: int = JOB_TTL):
        self.store = store
        self.ttl = ttl

    def _key(self, job_id):
        return f'{PREFIX}{job_id}'

    def _save(self, job: Dict):
        self.store.put(self._key(job['job_id']), job, self.ttl)

    def get_job(self, job_id: str) -> Optional[Dict]:
        return self.store.get(self._key(job_id))

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start_job(self, job_id: str, rule_key: str = None, force_run: bool = False) -> Dict:
        job = {
            'job_id': job_id,
            'status': RUNNING,
            'started_at': datetime.now().isoformat(),
            'rule_key': rule_key,
            'force_run': bool(force_run),
            'progress': {
                'companies_processed': 0,
                'companies_found': 0,
                'contacts_found': 0,
                'current_company': None,
            },
            'cancelled': False,
        }
        self._save(job)
        self.store.put(CURRENT_KEY, job_id, self.ttl)
        running = [j for j in self.store.get(RUNNING_KEY, []) if j != job_id]
        self.store.put(RUNNING_KEY, running + [job_id], self.ttl)
        logger.info("Job %s started (rule=%s, force=%s)", job_id, rule_key or 'all due', force_run)
        return job

    def update_progress(self, job_id: str, **progress) -> bool:
        """Merge progress counters into a running job."""
        job = self.get_job(job_id)
        if not job or job['status'] in TERMINAL_STATUSES:
            return False
        job['progress'].update(progress)
        self._save(job)
        return True

    def _finish(self, job_id: str, status: str, **fields) -> bool:
        job = self.get_job(job_id)
        if not job:
            logger.warning("Job %s not found, cannot mark %s", job_id, status)
            return False
        if job['status'] in TERMINAL_STATUSES:
            logger.info("Job %s already %s, ignoring %s", job_id, job['status'], status)
            return False

        job['status'] = status
        job[f'{status}_at'] = datetime.now().isoformat()
        job.update(fields)
        self._save(job)

        if self.store.get(CURRENT_KEY) == job_id:
            self.store.forget(CURRENT_KEY)
        running = self.store.get(RUNNING_KEY, [])
        if job_id in running:
            self.store.put(RUNNING_KEY, [j for j in running if j != job_id], self.ttl)
        return True

    def complete_job(self, job_id: str, result: Dict = None) -> bool:
        ok = self._finish(job_id, COMPLETED, result=result or {}, partial=False)
        if ok:
            logger.info("Job %s completed", job_id)
        return ok

    def complete_job_with_partial_results(self, job_id: str, result: Dict = None, reason: str = '') -> bool:
        ok = self._finish(job_id, COMPLETED, result=result or {}, partial=True, partial_reason=reason)
        if ok:
            logger.info("Job %s completed with partial results: %s", job_id, reason)
        return ok

    def fail_job(self, job_id: str, error: str) -> bool:
        ok = self._finish(job_id, FAILED, error=str(error))
        if ok:
            logger.error("Job %s failed: %s", job_id, error)
        return ok

    def cancel_job(self, job_id: str) -> bool:
        ok = self._finish(job_id, CANCELLED, cancelled=True)
        if ok:
            logger.info("Job %s cancelled", job_id)
        return ok

    def is_job_cancelled(self, job_id: Optional[str]) -> bool:
        if not job_id:
            return False
        job = self.get_job(job_id)
        return bool(job and job.get('cancelled'))

    # ── Queries ───────────────────────────────────────────────────────

    def get_current_job(self) -> Optional[Dict]:
        """The job behind the current pointer, if it is still running."""
        job_id = self.store.get(CURRENT_KEY)
        if not job_id:
            return None
        job = self.get_job(job_id)
        if job and job['status'] == RUNNING:
            return job
        return None

    def get_running_jobs(self) -> List[Dict]:
        jobs = []
        for job_id in self.store.get(RUNNING_KEY, []):
            job = self.get_job(job_id)
            if job and job['status'] == RUNNING:
                jobs.append(job)
        return jobs
