from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from searchengine.schemas import IndexingResponse, StatisticsResponse
from searchengine.services.indexing import IndexingService, get_indexing_service
from searchengine.services.page_indexing import (
    PageIndexingService,
    get_page_indexing_service,
)
from searchengine.services.statistics import StatisticsService, get_statistics_service

router = APIRouter(prefix="/api", tags=["indexing"])


@router.get("/statistics", response_model=StatisticsResponse, response_model_exclude_none=True)
async def statistics(service: StatisticsService = Depends(get_statistics_service)):
    return await service.get_statistics()


@router.get("/startIndexing", response_model=IndexingResponse, response_model_exclude_none=True)
async def start_indexing(service: IndexingService = Depends(get_indexing_service)):
    return await service.start_indexing()


@router.get("/stopIndexing", response_model=IndexingResponse, response_model_exclude_none=True)
async def stop_indexing(service: IndexingService = Depends(get_indexing_service)):
    return await service.stop_indexing()


@router.post("/indexPage", response_model=IndexingResponse, response_model_exclude_none=True)
async def index_page(
    url: str = Query(""),
    service: PageIndexingService = Depends(get_page_indexing_service),
):
    response = await service.index_page(url)
    if not response.result:
        return JSONResponse(status_code=400, content=response.model_dump(exclude_none=True))
    return response
