from typing import Annotated

from fastapi import APIRouter, Depends, Request

from taxis.dependencies import get_watchdog
from taxis.schemas.jobs import WatchdogRunResponse
from taxis.services.watchdog import Watchdog
from taxis.utils.responses import create_api_response

router = APIRouter()


@router.post(
    "/run",
    summary="Run one watchdog cycle",
    operation_id="run_watchdog_cycle",
)
async def run_watchdog(
    request: Request,
    watchdog: Annotated[Watchdog, Depends(get_watchdog)],
):
    """Requeue and re-trigger stalled jobs. Meant for an external scheduler."""
    result = await watchdog.run_once()
    return create_api_response(
        data=WatchdogRunResponse(**result.to_dict()),
        message=f"Reclaimed {result.reclaimed} job(s)",
        request=request
    )
