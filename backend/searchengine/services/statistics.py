import logging
from collections.abc import Sequence
from datetime import timezone
from functools import lru_cache

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from searchengine.config import SiteConfig, settings
from searchengine.database import async_session
from searchengine.models import Lemma, Page, SiteStatus
from searchengine.schemas.statistics import (
    DetailedStatisticsItem,
    StatisticsData,
    StatisticsResponse,
    TotalStatistics,
)
from searchengine.services.indexing import IndexingService, get_indexing_service
from searchengine.services.sites import get_site_by_url, utcnow

logger = logging.getLogger(__name__)

NOT_STARTED = "Indexing has not been started"


class StatisticsService:
    def __init__(
        self,
        sites: Sequence[SiteConfig] | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        indexing_service: IndexingService | None = None,
    ):
        self.sites = list(sites) if sites is not None else list(settings.sites)
        self.session_factory = session_factory
        self.indexing_service = indexing_service or get_indexing_service()

    async def get_statistics(self) -> StatisticsResponse:
        detailed: list[DetailedStatisticsItem] = []
        total_pages = 0
        total_lemmas = 0

        async with self.session_factory() as db:
            for site_config in self.sites:
                site = await get_site_by_url(db, site_config.url)
                if site is None:
                    detailed.append(
                        DetailedStatisticsItem(
                            url=site_config.url,
                            name=site_config.name,
                            status=SiteStatus.FAILED.value,
                            status_time=int(utcnow().timestamp()),
                            error=NOT_STARTED,
                            pages=0,
                            lemmas=0,
                        )
                    )
                    continue

                pages = await db.scalar(
                    select(func.count(Page.id)).where(Page.site_id == site.id)
                ) or 0
                lemmas = await db.scalar(
                    select(func.count(Lemma.id)).where(Lemma.site_id == site.id)
                ) or 0
                total_pages += pages
                total_lemmas += lemmas

                status_time = site.status_time or utcnow()
                # SQLite hands back naive datetimes
                if status_time.tzinfo is None:
                    status_time = status_time.replace(tzinfo=timezone.utc)
                detailed.append(
                    DetailedStatisticsItem(
                        url=site.url,
                        name=site.name,
                        status=site.status.value,
                        status_time=int(status_time.timestamp()),
                        error=site.last_error if site.status == SiteStatus.FAILED else None,
                        pages=pages,
                        lemmas=lemmas,
                    )
                )

        return StatisticsResponse(
            statistics=StatisticsData(
                total=TotalStatistics(
                    sites=len(self.sites),
                    pages=total_pages,
                    lemmas=total_lemmas,
                    indexing=self.indexing_service.is_running,
                ),
                detailed=detailed,
            )
        )


@lru_cache(maxsize=None)
def get_statistics_service() -> StatisticsService:
    return StatisticsService()
