import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from searchengine.config import settings
from searchengine.routers import indexing, search
from searchengine.services.indexing import get_indexing_service

logging.basicConfig(level=logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await get_indexing_service().shutdown()


app = FastAPI(title="Search Engine", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(indexing.router)
app.include_router(search.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
