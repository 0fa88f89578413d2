import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from functools import lru_cache

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from searchengine.config import SiteConfig, settings
from searchengine.database import async_session
from searchengine.exceptions import (
    FetchError,
    OutOfScope,
    SearchEngineError,
    UnsupportedContentType,
)
from searchengine.models import Page, Site, SiteStatus
from searchengine.schemas.indexing import IndexingResponse
from searchengine.services.crawler import (
    FetchedPage,
    build_client,
    is_supported_content_type,
    normalize_url,
    url_path,
)
from searchengine.services.indexing import IndexingService, get_indexing_service
from searchengine.services.lemma_finder import LemmaFinder, get_lemma_finder
from searchengine.services.lemma_indexing import remove_page_data, run_with_retry, write_lemmas
from searchengine.services.sites import (
    find_owning_site_config,
    get_site_by_url,
    reload_site,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class SiteSnapshot:
    site_id: int
    existed: bool
    status: SiteStatus
    last_error: str | None


class PageIndexingService:
    """(Re)indexes a single URL of a configured site outside of a full crawl.

    A failing page never damages a site that was already there: its previous
    status and error are put back. A site row created just for this call is
    marked FAILED instead.
    """

    def __init__(
        self,
        sites: Sequence[SiteConfig] | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        lemma_finder_factory: Callable[[], LemmaFinder] = get_lemma_finder,
        transport: httpx.AsyncBaseTransport | None = None,
        indexing_service: IndexingService | None = None,
    ):
        self.sites = list(sites) if sites is not None else list(settings.sites)
        self.session_factory = session_factory
        self.lemma_finder_factory = lemma_finder_factory
        self.transport = transport
        self.indexing_service = indexing_service or get_indexing_service()

    async def index_page(self, url: str) -> IndexingResponse:
        url = (url or "").strip()
        site_config = find_owning_site_config(self.sites, url)
        if site_config is None:
            error = OutOfScope()
            logger.info("Rejected page outside configured sites: %s", url)
            return IndexingResponse.failure(str(error))

        async with self.session_factory() as db:
            snapshot: SiteSnapshot | None = None
            try:
                snapshot = await self._get_or_create_site(db, site_config)
                await self._index(db, snapshot, url)
            except SearchEngineError as e:
                logger.warning("Could not index %s: %s", url, e)
                await self._restore_site(db, snapshot, str(e))
                return IndexingResponse.failure(str(e))
            except Exception as e:
                logger.exception("Page indexing failed for %s", url)
                error = f"Failed to index page: {e}"
                await self._restore_site(db, snapshot, error)
                return IndexingResponse.failure(error)

        logger.info("Indexed page %s", url)
        return IndexingResponse.ok()

    async def _get_or_create_site(
        self, db: AsyncSession, site_config: SiteConfig
    ) -> SiteSnapshot:
        site = await get_site_by_url(db, site_config.url)
        if site is not None:
            return SiteSnapshot(
                site_id=site.id,
                existed=True,
                status=site.status,
                last_error=site.last_error,
            )

        site = Site(
            url=site_config.url,
            name=site_config.name,
            status=SiteStatus.INDEXING,
            status_time=utcnow(),
        )
        db.add(site)
        await db.commit()
        return SiteSnapshot(
            site_id=site.id, existed=False, status=SiteStatus.INDEXING, last_error=None
        )

    async def _fetch(self, url: str) -> FetchedPage:
        async with build_client(transport=self.transport) as client:
            resp = await client.get(url)
        if resp.status_code >= 400:
            raise FetchError(resp.status_code)
        content_type = resp.headers.get("content-type", "")
        if not is_supported_content_type(content_type):
            raise UnsupportedContentType(content_type.split(";")[0].strip() or None)
        return FetchedPage(
            url=str(resp.url),
            status_code=resp.status_code,
            content_type=content_type,
            html=resp.text,
        )

    async def _index(self, db: AsyncSession, snapshot: SiteSnapshot, url: str) -> None:
        fetched = await self._fetch(url)
        path = url_path(normalize_url(url))

        lemma_finder = await asyncio.to_thread(self.lemma_finder_factory)
        lemma_counts = await asyncio.to_thread(lemma_finder.collect_lemmas, fetched.html)

        async def replace_page() -> None:
            # Old page removal, new page and its index rows commit together.
            existing = await db.scalar(
                select(Page).where(Page.site_id == snapshot.site_id, Page.path == path)
            )
            if existing is not None:
                logger.info("Replacing previously indexed page %s", path)
                await remove_page_data(db, existing)
            page = Page(
                site_id=snapshot.site_id,
                path=path,
                code=fetched.status_code,
                content=fetched.html,
            )
            db.add(page)
            await db.flush()
            await write_lemmas(db, page.id, snapshot.site_id, lemma_counts)

        await run_with_retry(db, replace_page)

        site = await reload_site(db, snapshot.site_id)
        if site is None:
            raise RuntimeError("site was deleted while the page was being indexed")
        # Leave the status to a crawl of this site that is still running.
        crawl_running = (
            snapshot.existed
            and site.status == SiteStatus.INDEXING
            and self.indexing_service.is_running
        )
        if not crawl_running:
            site.status = SiteStatus.INDEXED
        site.last_error = None
        site.status_time = utcnow()
        await db.commit()

    async def _restore_site(
        self, db: AsyncSession, snapshot: SiteSnapshot | None, error: str
    ) -> None:
        if snapshot is None:
            return
        try:
            await db.rollback()
            site = await reload_site(db, snapshot.site_id)
            if site is None:
                return
            if snapshot.existed:
                site.status = snapshot.status
                site.last_error = snapshot.last_error
            else:
                site.status = SiteStatus.FAILED
                site.last_error = error[:2048]
            site.status_time = utcnow()
            await db.commit()
        except Exception:
            logger.exception("Could not restore status of site %s", snapshot.site_id)


@lru_cache(maxsize=None)
def get_page_indexing_service() -> PageIndexingService:
    return PageIndexingService()
