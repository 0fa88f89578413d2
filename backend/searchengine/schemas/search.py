from pydantic import BaseModel, Field


class SearchResultItem(BaseModel):
    site: str
    site_name: str = Field(alias="siteName")
    uri: str
    title: str
    snippet: str
    relevance: float

    model_config = {"populate_by_name": True}


class SearchResponse(BaseModel):
    result: bool
    error: str | None = None
    count: int | None = None
    data: list[SearchResultItem] | None = None

    @classmethod
    def ok(cls, count: int, data: list[SearchResultItem]) -> "SearchResponse":
        return cls(result=True, count=count, data=data)

    @classmethod
    def failure(cls, error: str) -> "SearchResponse":
        return cls(result=False, error=error)
