"""
Trust Job Schemas
Pydantic models for the operation journal API
"""

from pydantic import BaseModel
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

JobType = Literal["declare", "auto_remove"]
JobStatus = Literal["running", "success", "failed"]


class TrustJobResponse(BaseModel):
    """One journaled trust operation"""
    id: int
    job_type: JobType
    status: JobStatus
    targets: List[str]
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class TrustJobStats(BaseModel):
    """Operation counts per status and per job type"""
    total: int
    running: int
    success: int
    failed: int
    by_type: Dict[str, int]
    last_auto_remove: Optional[datetime] = None


class PurgeResult(BaseModel):
    purged: int
