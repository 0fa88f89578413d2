from pydantic import BaseModel


class IndexingResponse(BaseModel):
    result: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> "IndexingResponse":
        return cls(result=True)

    @classmethod
    def failure(cls, error: str) -> "IndexingResponse":
        return cls(result=False, error=error)
