"""
Cron trigger for call dispatch.

External cron services hit this every few minutes. Each hit runs one
dispatch cycle inside a short execution budget; overlapping hits are safe.
"""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from app.auth.verify import cron_auth_dependency
from app.infrastructure.observability.logging import get_logger
from app.jobs.call_dispatch_job import CallDispatchJobError, dispatch_due_calls

router = APIRouter(prefix="/calls", tags=["Calls"])
logger = get_logger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


async def _process_calls() -> JSONResponse:
    try:
        result = await dispatch_due_calls()
    except CallDispatchJobError as e:
        logger.error("Error processing calls", error=str(e), operation=e.operation)
        return JSONResponse(
            {"success": False, "error": str(e)},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            headers=NO_CACHE_HEADERS,
        )

    logger.info("Cron call processing completed", **result)
    return JSONResponse({"success": True, **result}, headers=NO_CACHE_HEADERS)


@router.post("/process", dependencies=[Depends(cron_auth_dependency)])
async def process_calls():
    """Enqueue due customers and drain the call queue once."""
    return await _process_calls()


@router.get("/process", dependencies=[Depends(cron_auth_dependency)])
async def process_calls_get():
    """Same as POST, for cron services that can only send GET."""
    return await _process_calls()
