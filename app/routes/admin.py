"""
Operator endpoints.

Manual recovery actions that the automatic pipeline deliberately leaves to
a human: retrying a missed welcome call, re-enabling a customer after the
circuit breaker tripped, and recomputing every daily schedule.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.verify import cron_auth_dependency
from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.repositories.call_queue_repository import CallQueueRepository
from app.repositories.customer_repository import CustomerRepository
from app.services.scheduling.call_scheduler import call_scheduler

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(cron_auth_dependency)],
)
logger = get_logger(__name__)


@router.post("/customers/{customer_id}/welcome-call")
async def retry_welcome_call(customer_id: int):
    """Queue a welcome call for right now."""
    try:
        target = await CustomerRepository.get_call_target(customer_id)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")

        if target.welcome_call_done:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT, detail="Welcome call already completed"
            )

        queued = await CallQueueRepository.enqueue(
            customer_id,
            "welcome",
            datetime.now(UTC),
            max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        )

    except DatabaseError as e:
        logger.error("Manual welcome call failed", customer_id=customer_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to queue welcome call"
        ) from e

    logger.info("Manual welcome call requested", customer_id=customer_id, queued=queued)
    return {
        "customer_id": customer_id,
        "queued": queued,
        "message": "Welcome call queued" if queued else "Welcome call already queued",
    }


@router.post("/customers/{customer_id}/enable")
async def enable_customer_calls(customer_id: int):
    """Clear the circuit breaker for one customer."""
    try:
        updated = await CustomerRepository.enable_calling(customer_id)
    except DatabaseError as e:
        logger.error("Enable calling failed", customer_id=customer_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to enable calling"
        ) from e

    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")

    logger.info("Calling re-enabled by operator", customer_id=customer_id)
    return {"customer_id": customer_id, "call_state": "active", "consecutive_failures": 0}


@router.post("/schedules/recalculate")
async def recalculate_schedules():
    """Recompute next_call_at for every daily-call customer."""
    try:
        return await call_scheduler.recalculate_all_schedules()
    except DatabaseError as e:
        logger.error("Schedule recalculation failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to recalculate schedules",
        ) from e
