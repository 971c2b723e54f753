from typing import Any

from fastapi import APIRouter

from genqueue.runtime import Runtime, RuntimeDep
from genqueue.v1.core.exceptions import create_success_response

router = APIRouter(prefix="/polling", tags=["polling"])


@router.get("", response_model=dict)
async def get_polling_queue(runtime: Runtime = RuntimeDep) -> dict[str, Any]:
    """Polling queue counts and the next entries due."""
    return create_success_response(data=await runtime.polling.get_queue_status())
