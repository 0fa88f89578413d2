import asyncio
import logging
from collections.abc import Callable, Sequence
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from searchengine.config import SiteConfig, settings
from searchengine.database import async_session
from searchengine.exceptions import AlreadyRunning, NotRunning
from searchengine.models import Site, SiteStatus
from searchengine.schemas.indexing import IndexingResponse
from searchengine.services.crawler import SiteCrawler
from searchengine.services.lemma_finder import LemmaFinder, get_lemma_finder
from searchengine.services.sites import (
    clear_site_data,
    get_site_by_url,
    mark_site_failed,
    reload_site,
    utcnow,
)

logger = logging.getLogger(__name__)

STOPPED_BY_USER = "stopped by user"


class IndexingService:
    """Starts, tracks and stops full crawls of every configured site.

    State lives on the event loop and is only changed between awaits, so
    ``start_indexing`` acts as a compare-and-set on ``running``. Each run gets a
    generation number; site tasks left over from a stopped run can neither
    finish the new run early nor write statuses for it.
    """

    def __init__(
        self,
        sites: Sequence[SiteConfig] | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        lemma_finder_factory: Callable[[], LemmaFinder] = get_lemma_finder,
        crawler_options: dict | None = None,
    ):
        self.sites = list(sites) if sites is not None else list(settings.sites)
        self.session_factory = session_factory
        self.lemma_finder_factory = lemma_finder_factory
        self.crawler_options = crawler_options or {}

        self._running = False
        self._stop_requested = False
        self._pending_sites = 0
        self._generation = 0
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def pending_sites(self) -> int:
        return self._pending_sites

    def _is_stopped(self, generation: int) -> bool:
        return self._stop_requested or generation != self._generation

    async def start_indexing(self) -> IndexingResponse:
        try:
            self._start()
        except AlreadyRunning as e:
            logger.info("Indexing start rejected: %s", e)
            return IndexingResponse.failure(str(e))
        return IndexingResponse.ok()

    def _start(self) -> None:
        if self._running:
            raise AlreadyRunning()
        self._running = True
        self._stop_requested = False
        self._generation += 1
        generation = self._generation
        self._pending_sites = len(self.sites)

        logger.info("Starting indexing of %d site(s), run %d", len(self.sites), generation)
        if not self.sites:
            self._running = False
            return

        for site_config in self.sites:
            task = asyncio.create_task(
                self._index_site(site_config, generation),
                name=f"index-site:{site_config.url}",
            )
            self._tasks[site_config.url] = task

    async def stop_indexing(self) -> IndexingResponse:
        try:
            await self._stop()
        except NotRunning as e:
            logger.info("Indexing stop rejected: %s", e)
            return IndexingResponse.failure(str(e))
        return IndexingResponse.ok()

    async def _stop(self) -> None:
        # A stop already in progress counts as not running.
        if not self._running or self._stop_requested:
            raise NotRunning()
        logger.info("Stopping indexing: cancelling %d site task(s)", len(self._tasks))
        self._stop_requested = True
        # Cancelled tasks drop out of _tasks on their own once they unwind.
        for task in list(self._tasks.values()):
            task.cancel()

        await self._mark_all_sites_stopped()
        self._running = False
        self._pending_sites = 0
        logger.info("Indexing stopped")

    def on_site_complete(self, generation: int) -> None:
        if generation != self._generation or not self._running or self._stop_requested:
            return
        self._pending_sites -= 1
        if self._pending_sites <= 0:
            logger.info("All sites processed, indexing run %d finished", generation)
            self._pending_sites = 0
            self._running = False
            self._stop_requested = False

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._stop_requested = True
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._running = False
        self._pending_sites = 0

    async def _index_site(self, site_config: SiteConfig, generation: int) -> None:
        try:
            logger.info("Indexing site %s", site_config.url)
            await self._crawl_site(site_config, generation)
            logger.info("Finished indexing site %s", site_config.url)
        except asyncio.CancelledError:
            logger.info("Indexing of %s cancelled", site_config.url)
            raise
        except Exception as exc:
            logger.exception("Indexing of %s failed", site_config.url)
            if not self._is_stopped(generation):
                await self._mark_failed_by_url(site_config.url, f"Indexing error: {exc}")
        finally:
            if self._tasks.get(site_config.url) is asyncio.current_task():
                del self._tasks[site_config.url]
            self.on_site_complete(generation)

    async def _crawl_site(self, site_config: SiteConfig, generation: int) -> None:
        async with self.session_factory() as db:
            await clear_site_data(db, site_config.url)
            site = Site(
                url=site_config.url,
                name=site_config.name,
                status=SiteStatus.INDEXING,
                status_time=utcnow(),
            )
            db.add(site)
            await db.commit()
            site_id = site.id

        lemma_finder = await asyncio.to_thread(self.lemma_finder_factory)
        crawler = SiteCrawler(
            site_id,
            site_config.url,
            self.session_factory,
            lemma_finder,
            should_stop=lambda: self._is_stopped(generation),
            **self.crawler_options,
        )
        await crawler.crawl()

        if self._is_stopped(generation):
            return
        async with self.session_factory() as db:
            site = await reload_site(db, site_id)
            if site is None:
                return
            # A page error during the crawl leaves the site FAILED.
            if site.status == SiteStatus.INDEXING:
                site.status = SiteStatus.INDEXED
            site.status_time = utcnow()
            await db.commit()

    async def _mark_failed_by_url(self, url: str, error: str) -> None:
        try:
            async with self.session_factory() as db:
                site = await get_site_by_url(db, url)
                if site is not None:
                    await mark_site_failed(db, site.id, error)
        except Exception:
            logger.exception("Could not mark site %s as failed", url)

    async def _mark_all_sites_stopped(self) -> None:
        async with self.session_factory() as db:
            for site_config in self.sites:
                try:
                    site = await get_site_by_url(db, site_config.url)
                    if site is None:
                        db.add(
                            Site(
                                url=site_config.url,
                                name=site_config.name,
                                status=SiteStatus.FAILED,
                                last_error=STOPPED_BY_USER,
                                status_time=utcnow(),
                            )
                        )
                        await db.commit()
                    else:
                        await mark_site_failed(db, site.id, STOPPED_BY_USER)
                except Exception:
                    await db.rollback()
                    logger.exception("Could not mark %s as stopped", site_config.url)


@lru_cache(maxsize=None)
def get_indexing_service() -> IndexingService:
    return IndexingService()
