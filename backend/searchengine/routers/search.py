from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from searchengine.schemas import SearchResponse
from searchengine.services.search import SearchService, get_search_service

router = APIRouter(prefix="/api", tags=["search"])


@router.get("/search", response_model=SearchResponse, response_model_exclude_none=True)
async def search(
    query: str = Query(""),
    site: str | None = Query(None),
    offset: int = Query(0),
    limit: int | None = Query(None),
    service: SearchService = Depends(get_search_service),
):
    response = await service.search(query, site=site, offset=offset, limit=limit)
    if not response.result:
        return JSONResponse(
            status_code=400,
            content=response.model_dump(by_alias=True, exclude_none=True),
        )
    return response
