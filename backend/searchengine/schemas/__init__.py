from searchengine.schemas.indexing import IndexingResponse
from searchengine.schemas.search import SearchResponse, SearchResultItem
from searchengine.schemas.statistics import (
    DetailedStatisticsItem,
    StatisticsData,
    StatisticsResponse,
    TotalStatistics,
)

__all__ = [
    "IndexingResponse",
    "SearchResponse", "SearchResultItem",
    "DetailedStatisticsItem", "StatisticsData", "StatisticsResponse", "TotalStatistics",
]
