"""
SQLAlchemy models package.
Import all models here to ensure they're registered with Base.metadata.
"""
from src.models.bookings import Booking
from src.models.refunds import Refund, RefundStatus
from src.models.jobs import Job, JobStatus, JobType

__all__ = [
    "Booking",
    "Refund",
    "RefundStatus",
    "Job",
    "JobStatus",
    "JobType",
]
