"""
Trust Job Model
One trust mutation against the proxy: a declaration or an automatic removal
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from datetime import datetime
from app.database import Base

JOB_TYPES = ("declare", "auto_remove")
JOB_STATUSES = ("running", "success", "failed")


class TrustJob(Base):
    """Trust operation record"""

    __tablename__ = "trust_jobs"

    id = Column(Integer, primary_key=True, index=True)
    job_type = Column(String(20), nullable=False, index=True)  # declare, auto_remove
    target = Column(Text, nullable=False, default="")  # comma separated host:port keys

    status = Column(String(20), nullable=False, default="running", index=True)  # running, success, failed
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    finished_at = Column(DateTime)

    result = Column(JSON)
    error = Column(Text)

    def __repr__(self):
        return f"<TrustJob(id={self.id}, type='{self.job_type}', status='{self.status}')>"

    @property
    def targets(self):
        """Device keys touched by the operation"""
        return [key for key in (self.target or "").split(",") if key]

    def touches(self, target: str) -> bool:
        """True if the operation touched a device key, or any port of a host"""
        return any(key == target or key.rsplit(":", 1)[0] == target for key in self.targets)

    @property
    def duration(self):
        """Job duration in seconds"""
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None
