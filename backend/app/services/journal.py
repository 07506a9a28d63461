"""
Job Journal
Records trust operations in the trust_jobs table
"""

import structlog
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from starlette.concurrency import run_in_threadpool

from app.models import TrustJob

logger = structlog.get_logger()


class JobJournal:
    """
    Writes TrustJob rows through a session factory.

    Sessions are synchronous, so every write runs in the threadpool and
    never on the event loop.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def start(self, job_type: str, targets: Iterable[str]) -> int:
        """Record a running operation, returning its job id"""
        return await run_in_threadpool(self._start, job_type, ",".join(targets))

    async def finish(
        self,
        job_id: int,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await run_in_threadpool(self._finish, job_id, status, result, error)

    def _start(self, job_type: str, target: str) -> int:
        db = self.session_factory()
        try:
            job = TrustJob(job_type=job_type, target=target, status="running")
            db.add(job)
            db.commit()
            return job.id
        finally:
            db.close()

    def _finish(self, job_id: int, status: str, result, error) -> None:
        db = self.session_factory()
        try:
            job = db.query(TrustJob).filter(TrustJob.id == job_id).first()
            if not job:
                logger.warning("Trust job not found", job_id=job_id)
                return
            job.status = status
            job.finished_at = datetime.utcnow()
            job.result = result
            job.error = error
            db.commit()
        finally:
            db.close()
