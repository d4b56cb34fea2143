import logging

from fastapi import APIRouter, Depends, Request

from lab_booking.api.deps import get_current_admin
from lab_booking.models.user import User
from lab_booking.schemas.dashboard import SweepResponse

router = APIRouter(prefix="/admin", tags=["Admin"])
logger = logging.getLogger(__name__)


@router.post("/expiration-sweep", response_model=SweepResponse)
async def run_expiration_sweep(
    request: Request,
    admin: User = Depends(get_current_admin),
):
    """Run the booking expiration sweep immediately."""
    logger.info("Manual expiration sweep requested by %s", admin.external_id)
    result = await request.app.state.expiration_sweeper.sweep()
    return SweepResponse(processed=result.processed, failed=result.failed)
