"""
Database Models
"""

from app.models.job import TrustJob

__all__ = ["TrustJob"]
