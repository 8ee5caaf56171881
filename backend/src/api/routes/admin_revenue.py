"""
Admin Revenue Routes - platform revenue reporting.

- GET /admin/revenue: system fees earned by completed and paid bookings
"""
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_booking_service, require_admin
from src.booking.state_machine import Actor
from src.lib.exceptions import BadRequestException
from src.lib.logging import get_logger
from src.services.booking_service import BookingService


logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/revenue")
def get_revenue(
    start: Optional[datetime] = Query(None, description="Only bookings created at or after"),
    end: Optional[datetime] = Query(None, description="Only bookings created before"),
    actor: Actor = Depends(require_admin),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    if start and end and start >= end:
        raise BadRequestException("start must be before end", details={"start": str(start), "end": str(end)})

    report = service.revenue(start=start, end=end)
    logger.info(
        "Revenue report requested",
        extra={"extra_fields": {"admin_id": actor.id, "booking_count": report.booking_count}},
    )
    return report.to_dict()
