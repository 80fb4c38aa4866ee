"""HTTP controller layer for the snipe queue."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from gym_sniper.controllers.dependencies import get_queue_service, require_api_token
from gym_sniper.domain.models import SnipeQueueEntry
from gym_sniper.repository.queue_repository import QueueStoreError
from gym_sniper.services.queue_service import (
    DayConflictError,
    DuplicateSnipeError,
    QueueEntryNotFoundError,
    SnipeQueueError,
    SnipeQueueService,
    SnipeQueueValidationError,
)
from gym_sniper.services.session_client import ClassNotFoundError, PortalError
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["snipes"], dependencies=[Depends(require_api_token)])


class CreateSnipeRequest(BaseModel):
    """Input DTO validated before entering service layer."""

    class_id: int = Field(gt=0)


class SnipeResponse(BaseModel):
    class_id: int
    class_name: str
    class_start_time: datetime
    window_opens_at: datetime
    status: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
    trainer: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_domain(cls, entry: SnipeQueueEntry) -> "SnipeResponse":
        return cls(
            class_id=entry.class_id,
            class_name=entry.class_name,
            class_start_time=entry.class_start_time,
            window_opens_at=entry.window_opens_at,
            status=entry.status.value,
            created_at=entry.created_at,
            resolved_at=entry.resolved_at,
            trainer=entry.trainer,
            message=entry.message,
        )


@router.get("/snipes", response_model=list[SnipeResponse])
def list_snipes(service: SnipeQueueService = Depends(get_queue_service)) -> list[SnipeResponse]:
    try:
        entries = service.list_entries()
    except QueueStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [SnipeResponse.from_domain(entry) for entry in entries]


@router.post("/snipes", response_model=SnipeResponse, status_code=status.HTTP_201_CREATED)
def add_snipe(
    payload: CreateSnipeRequest,
    service: SnipeQueueService = Depends(get_queue_service),
) -> SnipeResponse:
    """Queue a snipe; the daemon picks it up when its window approaches."""
    try:
        entry = service.add(payload.class_id)
    except ClassNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SnipeQueueValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (DuplicateSnipeError, DayConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PortalError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except (SnipeQueueError, QueueStoreError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SnipeResponse.from_domain(entry)


@router.delete("/snipes/{class_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_snipe(
    class_id: int,
    service: SnipeQueueService = Depends(get_queue_service),
) -> Response:
    try:
        service.remove(class_id)
    except QueueEntryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except QueueStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
