"""HTTP controller layer for the class catalogue and the member's bookings."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from gym_sniper.controllers.dependencies import get_app_settings, get_portal_client, require_api_token
from gym_sniper.domain.matching import filter_classes
from gym_sniper.domain.models import ClassInstance
from gym_sniper.domain.window import opens_at
from gym_sniper.services.session_client import (
    AuthError,
    BookingRejectedError,
    ClassNotFoundError,
    NetworkError,
    PortalSessionClient,
)
from gym_sniper.utils.config import Settings
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["classes"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ClassResponse(BaseModel):
    id: int = Field(gt=0)
    name: str
    start_time: datetime
    window_opens_at: datetime
    status: str
    trainer: Optional[str] = None
    waitlist_position: Optional[int] = None

    @classmethod
    def from_domain(cls, item: ClassInstance, settings: Settings) -> "ClassResponse":
        return cls(
            id=item.id,
            name=item.name,
            start_time=item.start_time,
            window_opens_at=opens_at(item.start_time, settings.booking_window_offset),
            status=item.status_label,
            trainer=item.trainer,
            waitlist_position=item.waitlist_position,
        )


def _portal_failure(exc: Exception) -> HTTPException:
    if isinstance(exc, AuthError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Portal login failed: {exc}")
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("/health", response_model=HealthResponse)
async def health(settings: Settings = Depends(get_app_settings)) -> HealthResponse:
    return HealthResponse(status="ok", version=settings.app_version)


@router.get(
    "/classes",
    response_model=list[ClassResponse],
    dependencies=[Depends(require_api_token)],
)
def list_classes(
    days: int = Query(default=7, ge=1, le=28),
    class_name: Optional[str] = Query(default=None, min_length=1),
    trainer: Optional[str] = Query(default=None, min_length=1),
    time: Optional[str] = Query(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$"),
    client: PortalSessionClient = Depends(get_portal_client),
    settings: Settings = Depends(get_app_settings),
) -> list[ClassResponse]:
    """Catalogue for the next `days` days with optional filters."""
    try:
        classes = client.get_classes(days)
    except (AuthError, NetworkError) as exc:
        raise _portal_failure(exc) from exc
    selected = filter_classes(classes, class_name=class_name, trainer=trainer, time=time)
    return [ClassResponse.from_domain(item, settings) for item in selected]


@router.get(
    "/bookings",
    response_model=list[ClassResponse],
    dependencies=[Depends(require_api_token)],
)
def list_bookings(
    client: PortalSessionClient = Depends(get_portal_client),
    settings: Settings = Depends(get_app_settings),
) -> list[ClassResponse]:
    try:
        bookings = client.get_my_bookings()
    except (AuthError, NetworkError) as exc:
        raise _portal_failure(exc) from exc
    return [ClassResponse.from_domain(item, settings) for item in bookings]


@router.delete(
    "/bookings/{class_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_api_token)],
)
def cancel_booking(
    class_id: int,
    client: PortalSessionClient = Depends(get_portal_client),
) -> Response:
    try:
        client.cancel_booking(class_id)
    except ClassNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BookingRejectedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (AuthError, NetworkError) as exc:
        raise _portal_failure(exc) from exc
    logger.info("Cancelled booking for class %s via API", class_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
