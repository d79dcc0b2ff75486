from fastapi import APIRouter, Depends, HTTPException, Query, status

from discovery.schemas.opportunities import CrossCategoryOut
from discovery.services.discovery import get_discovery_service
from discovery.services.errors import ApplicationError, StoreUnavailableError, ValidationError

router = APIRouter()


@router.get("/search", response_model=CrossCategoryOut)
async def global_search(
    service=Depends(get_discovery_service),
    q: str | None = Query(default=None, max_length=256),
    limit: str | None = Query(default=None),
) -> CrossCategoryOut:
    try:
        payload = await service.global_search(q, limit=limit)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except (ApplicationError, StoreUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CrossCategoryOut(**payload)


@router.get("/discovery/snapshot", response_model=CrossCategoryOut)
async def discovery_snapshot(
    service=Depends(get_discovery_service),
    limit: str | None = Query(default=None),
) -> CrossCategoryOut:
    try:
        payload = await service.discovery_snapshot(limit=limit)
    except (ApplicationError, StoreUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CrossCategoryOut(mode="snapshot", **payload)
