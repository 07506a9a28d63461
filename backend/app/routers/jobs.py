"""
Trust Jobs API Router
Read and prune the journal of declarations and automatic removals
"""

from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import List, Optional

from app.database import get_db
from app.models import TrustJob
from app.models.job import JOB_STATUSES, JOB_TYPES
from app.schemas.job import JobStatus, JobType, PurgeResult, TrustJobResponse, TrustJobStats

router = APIRouter()


@router.get("/", response_model=List[TrustJobResponse])
def list_trust_jobs(
    target: Optional[str] = None,
    job_type: Optional[JobType] = None,
    status: Optional[JobStatus] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """
    Most recent trust operations first

    ``target`` is a host:port key or a bare host matching any of its ports.
    """
    query = db.query(TrustJob)
    if job_type:
        query = query.filter(TrustJob.job_type == job_type)
    if status:
        query = query.filter(TrustJob.status == status)
    query = query.order_by(TrustJob.started_at.desc(), TrustJob.id.desc())

    if not target:
        return query.limit(limit).all()

    # target is a comma separated column; narrow in SQL, match keys exactly here
    candidates = query.filter(TrustJob.target.contains(target)).all()
    return [job for job in candidates if job.touches(target)][:limit]


@router.get("/stats", response_model=TrustJobStats)
def get_trust_job_stats(db: Session = Depends(get_db)):
    """Counts per status and job type, and when a device was last auto-removed"""
    by_status = dict(
        db.query(TrustJob.status, func.count(TrustJob.id)).group_by(TrustJob.status).all()
    )
    by_type = dict(
        db.query(TrustJob.job_type, func.count(TrustJob.id)).group_by(TrustJob.job_type).all()
    )
    last_auto_remove = (
        db.query(func.max(TrustJob.finished_at))
        .filter(TrustJob.job_type == "auto_remove", TrustJob.status == "success")
        .scalar()
    )

    stats = {status: by_status.get(status, 0) for status in JOB_STATUSES}
    return {
        "total": sum(by_status.values()),
        **stats,
        "by_type": {job_type: by_type.get(job_type, 0) for job_type in JOB_TYPES},
        "last_auto_remove": last_auto_remove,
    }


@router.get("/{job_id}", response_model=TrustJobResponse)
def get_trust_job(job_id: int, db: Session = Depends(get_db)):
    job = db.query(TrustJob).filter(TrustJob.id == job_id).first()
    if not job:
        raise HTTPException(status_code=404, detail="Trust job not found")
    return job


@router.delete("/", response_model=PurgeResult)
def purge_trust_jobs(before: datetime, db: Session = Depends(get_db)):
    """Drop finished operations started before a cutoff; running ones are kept"""
    purged = (
        db.query(TrustJob)
        .filter(TrustJob.started_at < before, TrustJob.status != "running")
        .delete(synchronize_session=False)
    )
    db.commit()
    return {"purged": purged}
