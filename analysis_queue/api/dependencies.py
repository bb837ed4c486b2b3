"""
Shared FastAPI dependencies and error translation.
"""

from typing import Annotated

from fastapi import Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from analysis_queue.constants import CALLBACK_TOKEN_HEADER, OWNER_ID_HEADER
from analysis_queue.db import get_async_session
from analysis_queue.exceptions import QueueError
from analysis_queue.types.api import ErrorResponse

SessionDep = Annotated[AsyncSession, Depends(get_async_session)]


async def get_owner_id(
    owner_id: Annotated[str, Header(alias=OWNER_ID_HEADER, min_length=1, max_length=255)],
) -> str:
    """
    Identify the submitting owner.

    Authentication happens upstream; the gateway forwards the owner id.
    """
    return owner_id


async def get_callback_token(
    token: Annotated[str, Header(alias=CALLBACK_TOKEN_HEADER, min_length=1)],
) -> str:
    """Read the job callback token presented by an out-of-process reporter."""
    return token


OwnerId = Annotated[str, Depends(get_owner_id)]
CallbackToken = Annotated[str, Depends(get_callback_token)]


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    """Translate queue errors into HTTP error responses."""
    return JSONResponse(
        status_code=exc.status_code or status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(detail=str(exc), job_id=exc.job_id).model_dump(mode="json"),
    )
