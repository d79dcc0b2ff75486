from fastapi import APIRouter, Depends, HTTPException, Query, status

from discovery.schemas.opportunities import OpportunityListOut
from discovery.services.discovery import get_discovery_service
from discovery.services.errors import ApplicationError, StoreUnavailableError, ValidationError

router = APIRouter()


@router.get("/{category}", response_model=OpportunityListOut)
async def list_opportunities(
    category: str,
    service=Depends(get_discovery_service),
    q: str | None = Query(default=None, max_length=256),
    page: str | None = Query(default=None),
    page_size: str | None = Query(default=None, alias="pageSize"),
    filters: str | None = Query(default=None),
    sort: str | None = Query(default=None),
    include_facets: bool = Query(default=False, alias="includeFacets"),
    viewport: str | None = Query(default=None),
) -> OpportunityListOut:
    # page and pageSize stay strings so malformed values are clamped rather than rejected.
    try:
        envelope = await service.list_opportunities(
            category,
            query=q,
            page=page,
            page_size=page_size,
            filters=filters,
            sort=sort,
            include_facets=include_facets,
            viewport=viewport,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except (ApplicationError, StoreUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return OpportunityListOut(**envelope)
