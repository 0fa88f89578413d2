from pydantic import BaseModel, Field


class TotalStatistics(BaseModel):
    sites: int
    pages: int
    lemmas: int
    indexing: bool


class DetailedStatisticsItem(BaseModel):
    url: str
    name: str
    status: str
    status_time: int = Field(alias="statusTime")
    error: str | None = None
    pages: int
    lemmas: int

    model_config = {"populate_by_name": True}


class StatisticsData(BaseModel):
    total: TotalStatistics
    detailed: list[DetailedStatisticsItem]


class StatisticsResponse(BaseModel):
    result: bool = True
    statistics: StatisticsData
